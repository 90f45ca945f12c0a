"""Scheduled and recurring notification engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

import ulid

from eventrelay.errors import ClaimConflict, RelayError, ValidationError
from eventrelay.infra.scheduler import JobScheduler
from eventrelay.obs import metrics as obs_metrics
from eventrelay.realtime.registry import ConnectionRegistry
from eventrelay.settings import settings

from .dispatcher import DeliveryResult, NotificationDispatcher, normalize_channels
from .models import (
	CANCELLED,
	EXPIRED,
	FAILED,
	PENDING,
	SENT,
	Conditions,
	NotificationTemplate,
	Recurrence,
	ScheduledNotification,
)
from .recurrence import evaluate_conditions, next_occurrence, validate_conditions, validate_recurrence
from .repo import NotificationRepository, ScheduledRepository

_LOG = logging.getLogger(__name__)

SWEEP_JOB_ID = "notifications.sweep"
CLEANUP_JOB_ID = "notifications.cleanup"

# per-row outcomes reported by a sweep
OUTCOME_SENT = "sent"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_EXPIRED = "expired"
OUTCOME_DEFERRED = "deferred"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
	if value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value


@dataclass(slots=True)
class SweepReport:
	selected: int = 0
	outcomes: Dict[str, int] = field(default_factory=dict)

	def record(self, outcome: str) -> None:
		self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

	def count(self, outcome: str) -> int:
		return self.outcomes.get(outcome, 0)

	def to_dict(self) -> dict:
		return {"selected": self.selected, **self.outcomes}


@dataclass(slots=True)
class CleanupReport:
	scheduled: int = 0
	notifications: int = 0


class SchedulerEngine:
	"""Claims due rows, gates them, dispatches and records the outcome."""

	def __init__(
		self,
		*,
		repository: ScheduledRepository,
		notifications: NotificationRepository,
		dispatcher: NotificationDispatcher,
		registry: ConnectionRegistry,
		batch_size: int | None = None,
		poll_interval: float | None = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self.repository = repository
		self.notifications = notifications
		self.dispatcher = dispatcher
		self.registry = registry
		self.batch_size = batch_size or settings.scheduler_batch_size
		self.poll_interval = poll_interval or settings.scheduler_poll_seconds
		self._clock = clock
		self._running = False

	# --- creation / management -------------------------------------------------
	async def schedule(
		self,
		user_id: str,
		template: NotificationTemplate,
		scheduled_time: datetime,
		channels: Iterable[str] | None = None,
		*,
		recurrence: Optional[Recurrence] = None,
		conditions: Optional[Conditions] = None,
		max_execution_attempts: Optional[int] = None,
		source: str = "api",
		batch_id: Optional[str] = None,
	) -> ScheduledNotification:
		if not template.type:
			raise ValidationError("template_type_required")
		names = normalize_channels(channels)
		if recurrence is not None:
			validate_recurrence(recurrence)
		if conditions is not None:
			validate_conditions(conditions)
		attempts = max_execution_attempts or settings.default_max_execution_attempts
		if attempts < 1:
			raise ValidationError("invalid_max_execution_attempts")

		now = self._clock()
		scheduled_time = _aware(scheduled_time)
		row = ScheduledNotification(
			id=str(ulid.new()),
			user_id=user_id,
			template=template,
			channels=names,
			scheduled_time=scheduled_time,
			created_at=now,
			updated_at=now,
			max_execution_attempts=attempts,
			recurrence=recurrence,
			conditions=conditions,
			source=source,
			batch_id=batch_id,
		)
		if scheduled_time < now:
			row.status = EXPIRED
			row.execution_error = "scheduled_time_in_past"
		elif recurrence is not None and (
			recurrence.exhausted or (recurrence.end_date is not None and _aware(recurrence.end_date) < scheduled_time)
		):
			row.status = EXPIRED
			row.execution_error = "recurrence_exhausted"
		await self.repository.create(row)
		_LOG.info(
			"scheduler.scheduled",
			extra={"scheduled_id": row.id, "user_id": user_id, "status": row.status, "type": template.type},
		)
		return row

	async def get(self, scheduled_id: str) -> Optional[ScheduledNotification]:
		return await self.repository.get(scheduled_id)

	async def list_for_user(self, user_id: str, *, pending_only: bool = False, limit: int = 50) -> List[ScheduledNotification]:
		return await self.repository.list_for_user(user_id, pending_only=pending_only, limit=limit)

	async def cancel(self, scheduled_id: str) -> bool:
		cancelled = await self.repository.cancel(scheduled_id, self._clock())
		if cancelled:
			obs_metrics.scheduler_outcome(CANCELLED)
		return cancelled

	async def cancel_for_user(self, user_id: str) -> int:
		return await self.repository.cancel_where(self._clock(), user_id=user_id)

	async def cancel_batch(self, batch_id: str) -> int:
		return await self.repository.cancel_where(self._clock(), batch_id=batch_id)

	# --- execution -------------------------------------------------------------
	async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
		now = now or self._clock()
		obs_metrics.inc_scheduler_sweep()
		await self._release_stale(now)
		rows = await self.repository.due(now, self.batch_size)
		report = SweepReport(selected=len(rows))
		for row in rows:
			outcome = await self._execute(row.id, now)
			report.record(outcome)
			obs_metrics.scheduler_outcome(outcome)
		if rows:
			_LOG.info("scheduler.sweep", extra=report.to_dict())
		return report

	async def _execute(self, scheduled_id: str, now: datetime) -> str:
		row = await self.repository.claim(scheduled_id, now)
		if row is None:
			conflict = ClaimConflict()
			_LOG.info("scheduler.claim_lost", extra={"scheduled_id": scheduled_id, "detail": conflict.detail})
			return OUTCOME_SKIPPED

		gate = evaluate_conditions(
			row.conditions,
			row.user_id,
			registry=self.registry,
			now=now,
			activity_window=settings.activity_window_seconds,
		)
		if not gate.allowed:
			row.status = PENDING
			row.execution_error = gate.reason
			row.updated_at = now
			await self.repository.save(row)
			return OUTCOME_DEFERRED

		result: Optional[DeliveryResult] = None
		error: Optional[str] = None
		try:
			result = await self.dispatcher.dispatch(row.user_id, row.template, row.channels)
		except RelayError as exc:
			error = exc.detail
		except Exception as exc:
			_LOG.exception("scheduler.dispatch_failed", extra={"scheduled_id": row.id})
			error = str(exc) or type(exc).__name__

		row.updated_at = now
		if result is not None and result.success:
			try:
				return await self._succeeded(row, result, now)
			except Exception as exc:
				# delivered already; a retry would send twice
				_LOG.exception("scheduler.record_failed", extra={"scheduled_id": row.id})
				row.status = FAILED
				row.execution_error = f"record_failed:{type(exc).__name__}"
				await self.repository.save(row)
				return OUTCOME_FAILED
		if error is None and result is not None:
			error = ", ".join(f"{channel}:{reason}" for channel, reason in sorted(result.reasons.items())) or "all_channels_failed"
		return await self._failed(row, error or "dispatch_failed")

	async def _succeeded(self, row: ScheduledNotification, result: DeliveryResult, now: datetime) -> str:
		row.executed_at = now
		row.execution_error = None
		row.result = result.to_dict()
		if not row.recurring:
			row.status = SENT
			await self.repository.save(row)
			return OUTCOME_SENT
		row.recurrence.current_occurrence += 1
		upcoming = next_occurrence(row.scheduled_time, row.recurrence)
		if upcoming is None:
			row.status = EXPIRED
			await self.repository.save(row)
			_LOG.info("scheduler.series_finished", extra={"scheduled_id": row.id, "occurrences": row.recurrence.current_occurrence})
			return OUTCOME_EXPIRED
		row.status = PENDING
		row.scheduled_time = upcoming
		row.execution_attempts = 0
		await self.repository.save(row)
		return OUTCOME_RESCHEDULED

	async def _release_stale(self, now: datetime) -> None:
		cutoff = now - timedelta(seconds=settings.scheduler_processing_lease_seconds)
		released = await self.repository.release_stale(cutoff, now)
		if released:
			_LOG.warning("scheduler.released_stale", extra={"count": released})

	async def _failed(self, row: ScheduledNotification, error: str) -> str:
		row.execution_error = error
		if row.execution_attempts >= row.max_execution_attempts:
			row.status = FAILED
			await self.repository.save(row)
			_LOG.warning(
				"scheduler.failed",
				extra={"scheduled_id": row.id, "attempts": row.execution_attempts, "error": error},
			)
			return OUTCOME_FAILED
		row.status = PENDING
		await self.repository.save(row)
		return OUTCOME_RETRY

	async def cleanup(self, now: Optional[datetime] = None) -> CleanupReport:
		now = now or self._clock()
		report = CleanupReport(
			scheduled=await self.repository.purge_terminal_before(now - timedelta(days=settings.scheduled_retention_days)),
			notifications=await self.notifications.purge_read_before(
				now - timedelta(days=settings.read_notification_retention_days)
			),
		)
		obs_metrics.cleanup_purged("scheduled", report.scheduled)
		obs_metrics.cleanup_purged("notifications", report.notifications)
		_LOG.info("scheduler.cleanup", extra={"scheduled": report.scheduled, "notifications": report.notifications})
		return report

	# --- drivers ---------------------------------------------------------------
	async def run_forever(self) -> None:
		self._running = True
		while self._running:
			try:
				await self.sweep()
			except Exception:
				_LOG.exception("scheduler.sweep_crashed")
			# retries and deferred rows wait a full interval
			await asyncio.sleep(self.poll_interval)

	def stop(self) -> None:
		self._running = False

	def register_jobs(self, jobs: JobScheduler) -> None:
		jobs.schedule_every(SWEEP_JOB_ID, self.sweep, seconds=self.poll_interval)
		jobs.schedule_hourly(CLEANUP_JOB_ID, self.cleanup, hours=settings.cleanup_interval_hours)


__all__ = ["CleanupReport", "SchedulerEngine", "SweepReport"]
