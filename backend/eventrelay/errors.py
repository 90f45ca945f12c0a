"""Error taxonomy shared by the chat and notification surfaces."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - fallback for older Starlette builds
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class RelayError(Exception):
	"""Base class for errors reported back to the originating caller."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "relay_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail

	@property
	def code(self) -> str:
		return type(self).detail

	def to_payload(self) -> dict:
		return {"code": self.code, "detail": self.detail}


class AccessDenied(RelayError):
	"""Raised when a room join or call target is not permitted."""

	status_code = status.HTTP_403_FORBIDDEN
	detail = "access_denied"


class NotFound(RelayError):
	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"


class Forbidden(RelayError):
	"""Raised when a user mutates something they do not own."""

	status_code = status.HTTP_403_FORBIDDEN
	detail = "forbidden"


class ValidationError(RelayError):
	"""Raised for validation errors not covered by FastAPI schema validation."""

	status_code = _HTTP_422
	detail = "validation_error"


class DeliveryFailure(RelayError):
	"""Per-channel gateway failure. Recorded on the notification, never raised out of dispatch."""

	status_code = status.HTTP_502_BAD_GATEWAY
	detail = "delivery_failure"


class ClaimConflict(RelayError):
	"""Another worker claimed the scheduled row first."""

	status_code = status.HTTP_409_CONFLICT
	detail = "claim_conflict"


class UserUnavailable(RelayError):
	status_code = status.HTTP_409_CONFLICT
	detail = "user_unavailable"


class UnknownRecipient(NotFound):
	detail = "unknown_recipient"


__all__ = [
	"AccessDenied",
	"ClaimConflict",
	"DeliveryFailure",
	"Forbidden",
	"NotFound",
	"RelayError",
	"UnknownRecipient",
	"UserUnavailable",
	"ValidationError",
]
