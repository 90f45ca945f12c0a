"""JSON error envelopes for the REST surface; every body carries the request id."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from eventrelay.errors import RelayError, ValidationError


def _request_id(request: Request) -> str:
	return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or "unknown"


def _envelope(request: Request, status_code: int, body: dict[str, Any]) -> JSONResponse:
	body["request_id"] = _request_id(request)
	return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(RelayError)
	async def _relay_error(request: Request, exc: RelayError) -> JSONResponse:
		return _envelope(request, exc.status_code, exc.to_payload())

	@app.exception_handler(StarletteHTTPException)
	async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
		return _envelope(request, exc.status_code, {"detail": exc.detail})

	@app.exception_handler(RequestValidationError)
	async def _schema_error(request: Request, exc: RequestValidationError) -> JSONResponse:
		body = {"code": ValidationError.detail, "detail": "validation_error", "errors": exc.errors()}
		return _envelope(request, ValidationError.status_code, body)
