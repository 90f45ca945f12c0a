"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from eventrelay.api import notifications as notifications_api
from eventrelay.api.errors import install_error_handlers
from eventrelay.chat.sockets import ChatNamespace
from eventrelay.infra import postgres
from eventrelay.infra.migrations import apply_migrations
from eventrelay.infra.scheduler import JobScheduler
from eventrelay.obs import init as obs_init
from eventrelay.runtime import Runtime, build_runtime
from eventrelay.settings import settings


def _allowed_origins() -> list[str]:
	allow_origins = list(getattr(settings, "cors_allow_origins", []))
	if not allow_origins:
		allow_origins = ["http://localhost:3000"] if settings.is_dev() else []
	# Starlette disallows wildcard '*' with allow_credentials=True
	if "*" in allow_origins:
		allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []
	return allow_origins


def create_app(runtime: Runtime | None = None) -> FastAPI:
	runtime = runtime or build_runtime()

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		if settings.postgres_enabled:
			pool = await postgres.init_pool()
			await apply_migrations(pool)
		jobs: JobScheduler | None = None
		if settings.scheduler_enabled:
			jobs = JobScheduler()
			runtime.engine.register_jobs(jobs)
			jobs.start()
			app.state.jobs = jobs
		try:
			yield
		finally:
			if jobs is not None:
				jobs.shutdown()
			runtime.engine.stop()
			push_close = getattr(runtime.dispatcher.push_gateway, "aclose", None)
			if callable(push_close):
				await push_close()
			await postgres.close_pool()

	app = FastAPI(title="EventRelay", lifespan=lifespan)
	app.state.runtime = runtime
	install_error_handlers(app)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=_allowed_origins(),
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
	)
	obs_init(app)
	app.include_router(notifications_api.router)
	app.include_router(notifications_api.presence_router)

	@app.get("/health")
	async def health() -> dict:
		return {"status": "ok", "service": settings.service_name, **runtime.registry.stats()}

	return app


def create_socket_app(app: FastAPI) -> tuple[socketio.AsyncServer, socketio.ASGIApp]:
	runtime: Runtime = app.state.runtime
	# socket handshakes follow the REST CORS policy
	sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=_allowed_origins())
	chat_namespace = ChatNamespace(runtime.coordinator)
	sio.register_namespace(chat_namespace)
	app.state.sio = sio
	app.state.chat_namespace = chat_namespace
	return sio, socketio.ASGIApp(sio, other_asgi_app=app)


app = create_app()
sio, socket_app = create_socket_app(app)
