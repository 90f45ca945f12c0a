"""Outbound delivery gateways for push, email and SMS."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiosmtplib
import httpx

from eventrelay.settings import settings

logger = logging.getLogger(__name__)

# Expo error codes meaning the token itself is no longer valid
TOKEN_ERROR_CODES = frozenset({"DeviceNotRegistered", "InvalidCredentials", "InvalidToken"})


@dataclass(slots=True)
class GatewayResult:
	success: bool
	error: Optional[str] = None


@dataclass(slots=True)
class PushTicket:
	token: str
	success: bool
	error_code: Optional[str] = None

	@property
	def token_invalid(self) -> bool:
		return not self.success and self.error_code in TOKEN_ERROR_CODES


@dataclass(slots=True)
class PushMessage:
	title: str
	body: str
	data: Dict[str, Any] = field(default_factory=dict)
	priority: str = "normal"
	ttl: int = 86400
	sound: Optional[str] = "default"
	badge: Optional[int] = None


class PushGateway(Protocol):
	max_batch: int

	async def send_batch(self, tokens: Sequence[str], message: PushMessage) -> List[PushTicket]:
		...


class EmailGateway(Protocol):
	async def send(self, address: str, subject: str, body: str) -> GatewayResult:
		...


class SmsGateway(Protocol):
	async def send(self, phone: str, body: str) -> GatewayResult:
		...


def _mask(value: str) -> str:
	return hashlib.sha256(value.lower().encode("utf-8")).hexdigest()[:12]


def _push_priority(priority: str) -> str:
	return "high" if priority in ("high", "urgent") else "normal"


class ExpoPushGateway:
	"""Push gateway speaking the Expo push HTTP API."""

	def __init__(
		self,
		http: httpx.AsyncClient | None = None,
		*,
		url: str | None = None,
		max_batch: int | None = None,
	) -> None:
		self._http = http
		self._owns_http = http is None
		self.url = url or settings.push_gateway_url
		self.max_batch = max_batch or settings.push_batch_size

	def _client(self) -> httpx.AsyncClient:
		if self._http is None:
			self._http = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
		return self._http

	async def aclose(self) -> None:
		if self._http is not None and self._owns_http:
			await self._http.aclose()
			self._http = None

	def _payload(self, token: str, message: PushMessage) -> dict:
		payload: Dict[str, Any] = {
			"to": token,
			"title": message.title,
			"body": message.body,
			"data": message.data,
			"priority": _push_priority(message.priority),
			"ttl": message.ttl,
		}
		if message.sound:
			payload["sound"] = message.sound
		if message.badge is not None:
			payload["badge"] = message.badge
		return payload

	async def send_batch(self, tokens: Sequence[str], message: PushMessage) -> List[PushTicket]:
		tokens = list(tokens)[: self.max_batch]
		if not tokens:
			return []
		body = [self._payload(token, message) for token in tokens]
		try:
			response = await self._client().post(
				self.url,
				json=body,
				headers={"Accept": "application/json", "Content-Type": "application/json"},
			)
			response.raise_for_status()
			data = response.json().get("data") or []
		except (httpx.HTTPError, ValueError) as exc:
			logger.warning("push.batch_failed", extra={"tokens": len(tokens), "error": str(exc)})
			return [PushTicket(token=token, success=False, error_code="gateway_error") for token in tokens]
		tickets: List[PushTicket] = []
		for index, token in enumerate(tokens):
			entry = data[index] if index < len(data) else {}
			if entry.get("status") == "ok":
				tickets.append(PushTicket(token=token, success=True))
				continue
			details = entry.get("details") or {}
			tickets.append(
				PushTicket(
					token=token,
					success=False,
					error_code=details.get("error") or entry.get("message") or "unknown",
				)
			)
		return tickets


class SmtpEmailGateway:
	"""Email gateway using configured SMTP settings."""

	async def send(self, address: str, subject: str, body: str) -> GatewayResult:
		msg = EmailMessage()
		msg["From"] = settings.smtp_from_email
		msg["To"] = address
		msg["Subject"] = subject
		msg.set_content(body, subtype="html")
		# STARTTLS on 587, implicit TLS on 465
		start_tls = bool(settings.smtp_tls) and int(settings.smtp_port) == 587
		use_tls = bool(settings.smtp_tls) and int(settings.smtp_port) == 465
		try:
			await aiosmtplib.send(
				msg,
				hostname=settings.smtp_host,
				port=settings.smtp_port,
				username=settings.smtp_user,
				password=settings.smtp_password,
				start_tls=start_tls,
				use_tls=use_tls,
				timeout=settings.gateway_timeout_seconds,
			)
		except (aiosmtplib.SMTPException, OSError) as exc:
			logger.error("email.send_failed", extra={"to_hash": _mask(address), "error": str(exc)})
			return GatewayResult(success=False, error=str(exc))
		logger.info("email.sent", extra={"to_hash": _mask(address)})
		return GatewayResult(success=True)


def _mask_number(e164: str) -> str:
	if len(e164) <= 4:
		return e164
	return f"{e164[:-4]}XXXX"


class LoggingSmsGateway:
	"""Stub SMS sender that logs the event without disclosing PII."""

	def __init__(self, sender_id: str | None = None) -> None:
		self.sender_id = sender_id or settings.sms_sender_id

	async def send(self, phone: str, body: str) -> GatewayResult:
		logger.info(
			"sms_stub_send",
			extra={
				"to_masked": _mask_number(phone),
				"hash": _mask(phone),
				"sender": self.sender_id,
				"length": len(body),
			},
		)
		return GatewayResult(success=True)


__all__ = [
	"EmailGateway",
	"ExpoPushGateway",
	"GatewayResult",
	"LoggingSmsGateway",
	"PushGateway",
	"PushMessage",
	"PushTicket",
	"SmsGateway",
	"SmtpEmailGateway",
	"TOKEN_ERROR_CODES",
]
