"""Request id propagation, access logging and HTTP metrics."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from eventrelay.obs import logging as obs_logging
from eventrelay.obs import metrics

REQUEST_ID_HEADER = "X-Request-Id"


def _route_label(request: Request) -> str:
	# templated path keeps metric cardinality bounded
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app) -> None:
		super().__init__(app)
		self._access_log = obs_logging.get_logger("eventrelay.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		log_token = obs_logging.bind_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
			response.headers[REQUEST_ID_HEADER] = request_id
			return response
		finally:
			elapsed = time.perf_counter() - started
			route = _route_label(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			self._access_log.info(
				"http.request",
				extra={"route": route, "method": request.method, "status": status_code, "duration_ms": round(elapsed * 1000, 2)},
			)
			obs_logging.reset_context(log_token)
