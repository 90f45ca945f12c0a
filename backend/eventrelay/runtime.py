"""Process-wide wiring of the realtime, chat and notification components."""

from __future__ import annotations

from dataclasses import dataclass

from eventrelay.chat.access import AccessControl, InMemoryAccessControl, PostgresAccessControl
from eventrelay.chat.calls import CallBook
from eventrelay.chat.media import UploadedMediaProcessor
from eventrelay.chat.repo import InMemoryMessageRepository, MessageRepository, PostgresMessageRepository
from eventrelay.chat.service import ChatCoordinator
from eventrelay.infra.cache import CacheStore
from eventrelay.infra.gateways import (
	EmailGateway,
	ExpoPushGateway,
	LoggingSmsGateway,
	PushGateway,
	SmsGateway,
	SmtpEmailGateway,
)
from eventrelay.notifications.devices import DeviceTokens
from eventrelay.notifications.directory import (
	InMemoryRecipientDirectory,
	PostgresRecipientDirectory,
	RecipientDirectory,
)
from eventrelay.notifications.dispatcher import NotificationDispatcher
from eventrelay.notifications.offline_queue import OfflineQueue
from eventrelay.notifications.repo import (
	InMemoryNotificationRepository,
	InMemoryScheduledRepository,
	NotificationRepository,
	PostgresNotificationRepository,
	PostgresScheduledRepository,
	ScheduledRepository,
)
from eventrelay.notifications.scheduler import SchedulerEngine
from eventrelay.notifications.service import NotificationService
from eventrelay.realtime.registry import ConnectionRegistry
from eventrelay.realtime.router import RoomRouter
from eventrelay.settings import settings


@dataclass
class Runtime:
	registry: ConnectionRegistry
	router: RoomRouter
	cache: CacheStore
	offline_queue: OfflineQueue
	devices: DeviceTokens
	directory: RecipientDirectory
	access: AccessControl
	messages: MessageRepository
	notifications: NotificationRepository
	scheduled: ScheduledRepository
	dispatcher: NotificationDispatcher
	engine: SchedulerEngine
	coordinator: ChatCoordinator
	service: NotificationService


def build_runtime(
	*,
	use_postgres: bool | None = None,
	push_gateway: PushGateway | None = None,
	email_gateway: EmailGateway | None = None,
	sms_gateway: SmsGateway | None = None,
	directory: RecipientDirectory | None = None,
	access: AccessControl | None = None,
) -> Runtime:
	"""Assemble every collaborator; in-memory stores unless Postgres is enabled."""
	if use_postgres is None:
		use_postgres = settings.postgres_enabled
	registry = ConnectionRegistry()
	router = RoomRouter(registry)
	cache = CacheStore()
	offline_queue = OfflineQueue(cache)
	devices = DeviceTokens(cache)
	if use_postgres:
		directory = directory or PostgresRecipientDirectory()
		access = access or PostgresAccessControl()
		messages: MessageRepository = PostgresMessageRepository()
		notifications: NotificationRepository = PostgresNotificationRepository()
		scheduled: ScheduledRepository = PostgresScheduledRepository()
	else:
		directory = directory or InMemoryRecipientDirectory()
		access = access or InMemoryAccessControl()
		messages = InMemoryMessageRepository()
		notifications = InMemoryNotificationRepository()
		scheduled = InMemoryScheduledRepository()
	dispatcher = NotificationDispatcher(
		registry=registry,
		router=router,
		repository=notifications,
		directory=directory,
		devices=devices,
		offline_queue=offline_queue,
		push_gateway=push_gateway or ExpoPushGateway(),
		email_gateway=email_gateway or SmtpEmailGateway(),
		sms_gateway=sms_gateway or LoggingSmsGateway(),
	)
	engine = SchedulerEngine(
		repository=scheduled,
		notifications=notifications,
		dispatcher=dispatcher,
		registry=registry,
	)
	coordinator = ChatCoordinator(
		registry=registry,
		router=router,
		repository=messages,
		access=access,
		media=UploadedMediaProcessor(),
		offline_queue=offline_queue,
		calls=CallBook(),
	)
	service = NotificationService(repository=notifications, dispatcher=dispatcher, engine=engine)
	return Runtime(
		registry=registry,
		router=router,
		cache=cache,
		offline_queue=offline_queue,
		devices=devices,
		directory=directory,
		access=access,
		messages=messages,
		notifications=notifications,
		scheduled=scheduled,
		dispatcher=dispatcher,
		engine=engine,
		coordinator=coordinator,
		service=service,
	)


__all__ = ["Runtime", "build_runtime"]
