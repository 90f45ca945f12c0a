"""Multi-channel notification dispatch.

Each requested channel is resolved into a tagged variant carrying only what its
handler needs, then attempted independently. A channel failure is recorded on
the notification's delivery sub-state; it never aborts the other channels and
never raises out of ``dispatch``.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import ulid

from eventrelay.errors import DeliveryFailure, UnknownRecipient, ValidationError
from eventrelay.infra.gateways import EmailGateway, PushGateway, PushMessage, PushTicket, SmsGateway
from eventrelay.obs import metrics as obs_metrics
from eventrelay.realtime.registry import ConnectionRegistry
from eventrelay.realtime.router import RoomRouter
from eventrelay.settings import settings

from .devices import DeviceTokens
from .directory import RecipientContact, RecipientDirectory
from .models import (
	CHANNELS,
	EMAIL,
	IN_APP,
	OUTCOME_FAILED,
	OUTCOME_SENT,
	OUTCOME_SKIPPED,
	PUSH,
	SMS,
	ChannelDelivery,
	Notification,
	NotificationTemplate,
)
from .offline_queue import OfflineQueue
from .repo import NotificationRepository

_LOG = logging.getLogger(__name__)

SMS_MAX_LENGTH = 160


# --- channel variants ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InApp:
	name = IN_APP


@dataclass(frozen=True, slots=True)
class Push:
	tokens: Tuple[str, ...]
	name = PUSH


@dataclass(frozen=True, slots=True)
class Email:
	address: Optional[str]
	name = EMAIL


@dataclass(frozen=True, slots=True)
class Sms:
	phone: Optional[str]
	name = SMS


Channel = InApp | Push | Email | Sms


@dataclass(slots=True)
class ChannelOutcome:
	status: str
	reason: Optional[str] = None

	@classmethod
	def sent(cls) -> "ChannelOutcome":
		return cls(OUTCOME_SENT)

	@classmethod
	def failed(cls, reason: str) -> "ChannelOutcome":
		return cls(OUTCOME_FAILED, reason)

	@classmethod
	def skipped(cls, reason: str) -> "ChannelOutcome":
		return cls(OUTCOME_SKIPPED, reason)


@dataclass(slots=True)
class DeliveryResult:
	notification: Notification
	per_channel: Dict[str, str] = field(default_factory=dict)
	reasons: Dict[str, str] = field(default_factory=dict)

	@property
	def success(self) -> bool:
		return any(outcome == OUTCOME_SENT for outcome in self.per_channel.values())

	def to_dict(self) -> dict:
		return {
			"notificationId": self.notification.id,
			"success": self.success,
			"perChannel": dict(self.per_channel),
			"reasons": dict(self.reasons),
		}


@dataclass(slots=True)
class BulkResult:
	results: Dict[str, DeliveryResult] = field(default_factory=dict)
	errors: Dict[str, str] = field(default_factory=dict)

	@property
	def total(self) -> int:
		return len(self.results) + len(self.errors)

	@property
	def successful(self) -> int:
		return sum(1 for result in self.results.values() if result.success)

	@property
	def failed(self) -> int:
		return self.total - self.successful

	def summary(self) -> dict:
		return {"total": self.total, "successful": self.successful, "failed": self.failed}


def normalize_channels(channels: Iterable[str] | None) -> Tuple[str, ...]:
	"""Validate channel names, dropping duplicates; defaults to in-app only."""
	ordered: List[str] = []
	for channel in channels or (IN_APP,):
		name = str(channel).strip().lower()
		if name not in CHANNELS:
			raise ValidationError(f"unsupported_channel:{name}")
		if name not in ordered:
			ordered.append(name)
	if not ordered:
		raise ValidationError("channels_required")
	return tuple(ordered)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class NotificationDispatcher:
	def __init__(
		self,
		*,
		registry: ConnectionRegistry,
		router: RoomRouter,
		repository: NotificationRepository,
		directory: RecipientDirectory,
		devices: DeviceTokens,
		offline_queue: OfflineQueue,
		push_gateway: PushGateway,
		email_gateway: EmailGateway,
		sms_gateway: SmsGateway,
		timeout: float | None = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self.registry = registry
		self.router = router
		self.repository = repository
		self.directory = directory
		self.devices = devices
		self.offline_queue = offline_queue
		self.push_gateway = push_gateway
		self.email_gateway = email_gateway
		self.sms_gateway = sms_gateway
		self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
		self._clock = clock
		self._handlers: Dict[type, Callable[[Notification, Channel], Awaitable[ChannelOutcome]]] = {
			InApp: self._deliver_in_app,
			Push: self._deliver_push,
			Email: self._deliver_email,
			Sms: self._deliver_sms,
		}

	async def _resolve(self, name: str, contact: RecipientContact) -> Channel:
		if name == IN_APP:
			return InApp()
		if name == PUSH:
			tokens = await self.devices.tokens(contact.user_id)
			return Push(tokens=tuple(sorted(tokens)) if tokens is not None else ())
		if name == EMAIL:
			return Email(address=contact.email)
		return Sms(phone=contact.phone)

	async def dispatch(
		self,
		recipient_id: str,
		template: NotificationTemplate,
		channels: Iterable[str] | None = None,
		*,
		sender_id: Optional[str] = None,
	) -> DeliveryResult:
		"""Persist the notification and attempt every requested channel."""
		names = normalize_channels(channels)
		contact = await self.directory.get(recipient_id)
		if contact is None:
			raise UnknownRecipient()
		started = time.perf_counter()
		notification = Notification(
			id=str(ulid.new()),
			recipient_id=recipient_id,
			sender_id=sender_id,
			type=template.type,
			title=template.title,
			body=template.body,
			data=dict(template.data),
			priority=template.priority,
			category=template.category,
			channels=names,
			created_at=self._clock(),
			delivery={name: ChannelDelivery() for name in names},
		)
		await self.repository.create(notification)

		outcomes = await asyncio.gather(*(self._attempt(notification, name, contact) for name in names))

		result = DeliveryResult(notification=notification)
		now = self._clock()
		for name, outcome in zip(names, outcomes):
			state = notification.delivery[name]
			result.per_channel[name] = outcome.status
			if outcome.status == OUTCOME_SENT:
				state.sent = True
				state.sent_at = now
			elif outcome.status == OUTCOME_FAILED:
				state.failed = True
			if outcome.reason:
				state.failure_reason = outcome.reason
				result.reasons[name] = outcome.reason
			obs_metrics.notification_channel(name, outcome.status)
		try:
			await self.repository.update_delivery(notification.id, notification.delivery)
		except Exception:
			_LOG.exception("dispatcher.delivery_state_failed", extra={"notification_id": notification.id})
		obs_metrics.observe_dispatch(time.perf_counter() - started)
		return result

	async def _attempt(self, notification: Notification, name: str, contact: RecipientContact) -> ChannelOutcome:
		if not contact.allows(name):
			return ChannelOutcome.skipped("disabled_by_user")
		try:
			channel = await self._resolve(name, contact)
			return await self._handlers[type(channel)](notification, channel)
		except DeliveryFailure as exc:
			_LOG.info(
				"dispatcher.channel_rejected",
				extra={"channel": name, "notification_id": notification.id, "detail": exc.detail},
			)
			return ChannelOutcome.failed(exc.detail)
		except Exception as exc:
			_LOG.exception(
				"dispatcher.channel_failed",
				extra={"channel": name, "notification_id": notification.id},
			)
			return ChannelOutcome.failed(str(exc) or type(exc).__name__)

	async def _bounded(self, awaitable: Awaitable):
		return await asyncio.wait_for(awaitable, timeout=self.timeout)

	# --- per-variant handlers --------------------------------------------------
	async def _deliver_in_app(self, notification: Notification, channel: InApp) -> ChannelOutcome:
		# the persisted record is the in-app delivery; live push or queue is extra
		recipient = notification.recipient_id
		if self.registry.is_online(recipient):
			if await self.router.send_to_user(recipient, "notification", notification.to_dict()):
				return ChannelOutcome.sent()
		queued = await self.offline_queue.push(recipient, notification.compact())
		if queued is None:
			_LOG.warning("dispatcher.offline_queue_unavailable", extra={"user_id": recipient})
		return ChannelOutcome.sent()

	async def _deliver_push(self, notification: Notification, channel: Push) -> ChannelOutcome:
		if not channel.tokens:
			return ChannelOutcome.failed("no_push_tokens")
		message = PushMessage(
			title=notification.title,
			body=notification.body,
			data={**notification.data, "notificationId": notification.id, "type": notification.type},
			priority=notification.priority,
			ttl=settings.push_default_ttl_seconds,
		)
		tickets: List[PushTicket] = []
		batch_size = max(1, int(getattr(self.push_gateway, "max_batch", settings.push_batch_size)))
		for start in range(0, len(channel.tokens), batch_size):
			batch = channel.tokens[start : start + batch_size]
			try:
				tickets.extend(await self._bounded(self.push_gateway.send_batch(batch, message)))
			except asyncio.TimeoutError:
				_LOG.warning("dispatcher.push_timeout", extra={"tokens": len(batch)})
				tickets.extend(PushTicket(token=token, success=False, error_code="timeout") for token in batch)
		invalid = [ticket.token for ticket in tickets if ticket.token_invalid]
		if invalid:
			await self._prune_tokens(notification.recipient_id, invalid)
		if any(ticket.success for ticket in tickets):
			return ChannelOutcome.sent()
		errors = [ticket.error_code for ticket in tickets if ticket.error_code]
		return ChannelOutcome.failed(errors[0] if errors else "push_failed")

	async def _prune_tokens(self, user_id: str, tokens: Sequence[str]) -> None:
		removed = await self.devices.unregister(user_id, *tokens)
		if removed is None:
			_LOG.warning("dispatcher.token_prune_unavailable", extra={"user_id": user_id})
			return
		obs_metrics.inc_push_tokens_pruned(len(tokens))
		_LOG.info("dispatcher.tokens_pruned", extra={"user_id": user_id, "count": len(tokens)})

	async def _deliver_email(self, notification: Notification, channel: Email) -> ChannelOutcome:
		if not channel.address:
			return ChannelOutcome.failed("no_email_address")
		body = f"<html><body><h2>{html.escape(notification.title)}</h2><p>{html.escape(notification.body)}</p></body></html>"
		try:
			result = await self._bounded(self.email_gateway.send(channel.address, notification.title, body))
		except asyncio.TimeoutError:
			return ChannelOutcome.failed("timeout")
		if not result.success:
			raise DeliveryFailure(result.error or "email_failed")
		return ChannelOutcome.sent()

	async def _deliver_sms(self, notification: Notification, channel: Sms) -> ChannelOutcome:
		if not channel.phone:
			return ChannelOutcome.failed("no_phone_number")
		text = f"{notification.title}: {notification.body}"[:SMS_MAX_LENGTH]
		try:
			result = await self._bounded(self.sms_gateway.send(channel.phone, text))
		except asyncio.TimeoutError:
			return ChannelOutcome.failed("timeout")
		if not result.success:
			raise DeliveryFailure(result.error or "sms_failed")
		return ChannelOutcome.sent()

	# --- fan-out helpers -------------------------------------------------------
	async def dispatch_bulk(
		self,
		recipient_ids: Iterable[str],
		template: NotificationTemplate,
		channels: Iterable[str] | None = None,
		*,
		sender_id: Optional[str] = None,
	) -> BulkResult:
		names = normalize_channels(channels)
		bulk = BulkResult()
		for recipient_id in dict.fromkeys(recipient_ids):
			try:
				bulk.results[recipient_id] = await self.dispatch(recipient_id, template, names, sender_id=sender_id)
			except UnknownRecipient as exc:
				bulk.errors[recipient_id] = exc.detail
		return bulk

	async def register_token(self, user_id: str, token: str) -> bool:
		return await self.devices.register(user_id, token) is not None

	async def unregister_token(self, user_id: str, token: str) -> bool:
		return await self.devices.unregister(user_id, token) is not None


__all__ = [
	"BulkResult",
	"Channel",
	"ChannelOutcome",
	"DeliveryResult",
	"Email",
	"InApp",
	"NotificationDispatcher",
	"Push",
	"Sms",
	"normalize_channels",
]
