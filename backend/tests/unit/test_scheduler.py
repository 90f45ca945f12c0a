import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from eventrelay.infra.scheduler import JobScheduler
from eventrelay.notifications import scheduler as scheduler_module
from eventrelay.notifications.models import Conditions, NotificationTemplate, Recurrence
from eventrelay.notifications.schemas import RecurrenceModel
from eventrelay.settings import settings


def _template(priority: str = "normal", type: str = "system") -> NotificationTemplate:
	return NotificationTemplate(type=type, title="Reminder", body="Don't forget", priority=priority)


def _soon(hours: int = 1) -> datetime:
	base = datetime.now(timezone.utc).replace(second=0, microsecond=0)
	return base + timedelta(hours=hours)


@pytest.fixture
def engine(runtime):
	runtime.directory.add("bob", email="bob@example.com")
	return runtime.engine


@pytest.mark.asyncio
async def test_past_time_is_stored_expired_and_never_swept(engine):
	row = await engine.schedule("bob", _template(), datetime.now(timezone.utc) - timedelta(minutes=5))

	assert row.status == "expired"
	assert row.execution_error == "scheduled_time_in_past"
	report = await engine.sweep()
	assert report.selected == 0


@pytest.mark.asyncio
async def test_exhausted_recurrence_is_stored_expired(engine):
	when = _soon()
	row = await engine.schedule(
		"bob",
		_template(),
		when,
		recurrence=Recurrence("daily", end_date=when - timedelta(minutes=1)),
	)

	assert row.status == "expired"
	assert row.execution_error == "recurrence_exhausted"


@pytest.mark.asyncio
async def test_one_off_send_marks_row_sent(engine, runtime):
	when = _soon()
	row = await engine.schedule("bob", _template(), when)

	report = await engine.sweep(now=when)

	assert report.count("sent") == 1
	stored = await engine.get(row.id)
	assert stored.status == "sent"
	assert stored.executed_at == when
	assert stored.result["perChannel"] == {"in_app": "sent"}
	_, total = await runtime.notifications.list_for_user("bob")
	assert total == 1


@pytest.mark.asyncio
async def test_daily_recurrence_reschedules_in_place(engine):
	when = _soon().replace(hour=9, minute=0) + timedelta(days=1)
	row = await engine.schedule("bob", _template(), when, recurrence=Recurrence("daily"))

	report = await engine.sweep(now=when)

	assert report.count("rescheduled") == 1
	stored = await engine.get(row.id)
	assert stored.status == "pending"
	assert stored.scheduled_time == when + timedelta(days=1)
	assert stored.scheduled_time.hour == 9
	assert stored.recurrence.current_occurrence == 1
	assert stored.execution_attempts == 0


@pytest.mark.asyncio
async def test_max_occurrences_sends_exactly_that_many(engine, runtime):
	when = _soon()
	row = await engine.schedule("bob", _template(), when, recurrence=Recurrence("daily", max_occurrences=3))

	outcomes = []
	for day in range(4):
		report = await engine.sweep(now=when + timedelta(days=day))
		outcomes.extend(report.outcomes)

	assert outcomes == ["rescheduled", "rescheduled", "expired"]
	stored = await engine.get(row.id)
	assert stored.status == "expired"
	assert stored.recurrence.current_occurrence == 3
	_, total = await runtime.notifications.list_for_user("bob")
	assert total == 3


@pytest.mark.asyncio
async def test_failing_channel_retries_until_attempts_run_out(engine, email_gateway):
	email_gateway.success = False
	when = _soon()
	row = await engine.schedule("bob", _template(), when, ["email"], max_execution_attempts=3)

	outcomes = []
	statuses = []
	for minute in range(4):
		report = await engine.sweep(now=when + timedelta(minutes=minute))
		outcomes.extend(report.outcomes)
		statuses.append((await engine.get(row.id)).status)

	assert outcomes == ["retry", "retry", "failed"]
	assert statuses == ["pending", "pending", "failed", "failed"]
	stored = await engine.get(row.id)
	assert stored.execution_attempts == 3
	assert stored.execution_error == "email:smtp_error"


@pytest.mark.asyncio
async def test_gate_defers_until_user_is_online(engine, runtime, make_handle):
	when = _soon()
	row = await engine.schedule("bob", _template(), when, conditions=Conditions(user_online=True))

	report = await engine.sweep(now=when)

	assert report.count("deferred") == 1
	stored = await engine.get(row.id)
	assert stored.status == "pending"
	assert stored.execution_error == "user_offline"

	runtime.registry.register("bob", make_handle("bob"))
	report = await engine.sweep(now=when + timedelta(minutes=1))

	assert report.count("sent") == 1
	assert (await engine.get(row.id)).status == "sent"


@pytest.mark.asyncio
async def test_due_rows_ordered_by_time_then_priority(engine):
	when = _soon()
	low = await engine.schedule("bob", _template("low"), when)
	urgent = await engine.schedule("bob", _template("urgent"), when)
	engine.batch_size = 1

	await engine.sweep(now=when)

	assert (await engine.get(urgent.id)).status == "sent"
	assert (await engine.get(low.id)).status == "pending"


@pytest.mark.asyncio
async def test_cancelled_row_is_not_dispatched(engine, runtime):
	when = _soon()
	row = await engine.schedule("bob", _template(), when)

	assert await engine.cancel(row.id) is True
	assert await engine.cancel(row.id) is False
	report = await engine.sweep(now=when)

	assert report.selected == 0
	_, total = await runtime.notifications.list_for_user("bob")
	assert total == 0


@pytest.mark.asyncio
async def test_cancel_during_processing_wins(engine):
	when = _soon()
	row = await engine.schedule("bob", _template(), when)
	dispatch = engine.dispatcher.dispatch

	async def cancel_then_dispatch(*args, **kwargs):
		await engine.cancel(row.id)
		return await dispatch(*args, **kwargs)

	engine.dispatcher.dispatch = cancel_then_dispatch
	await engine.sweep(now=when)

	assert (await engine.get(row.id)).status == "cancelled"


@pytest.mark.asyncio
async def test_batch_cancel_only_touches_pending_rows(engine):
	when = _soon()
	first = await engine.schedule("bob", _template(), when, batch_id="b1")
	second = await engine.schedule("bob", _template(), when + timedelta(hours=2), batch_id="b1")
	await engine.sweep(now=when)

	assert await engine.cancel_batch("b1") == 1
	assert (await engine.get(first.id)).status == "sent"
	assert (await engine.get(second.id)).status == "cancelled"


@pytest.mark.asyncio
async def test_cleanup_purges_old_terminal_rows_and_read_notifications(engine, runtime):
	expired = await engine.schedule("bob", _template(), datetime.now(timezone.utc) - timedelta(hours=1))
	when = _soon()
	pending = await engine.schedule("bob", _template(), when)
	await engine.sweep(now=when)
	notifications, _ = await runtime.notifications.list_for_user("bob")
	await runtime.service.mark_read(notifications[0].id, "bob")

	report = await engine.cleanup(now=when + timedelta(days=90))

	assert report.scheduled == 1
	assert report.notifications == 1
	assert await engine.get(expired.id) is None
	# only expired, failed and cancelled rows are purged
	assert (await engine.get(pending.id)).status == "sent"


def test_register_jobs_adds_sweep_and_cleanup(engine):
	jobs = JobScheduler()

	engine.register_jobs(jobs)

	assert sorted(jobs.job_ids()) == ["notifications.cleanup", "notifications.sweep"]


@pytest.mark.asyncio
async def test_cancel_for_user_and_bulk_schedule(engine, runtime):
	runtime.directory.add("carol")
	when = _soon()

	batch_id, rows = await runtime.service.schedule_bulk(["bob", "carol", "bob"], "system", when, {"message": "Hi"})

	assert len(rows) == 2
	assert {row.batch_id for row in rows} == {batch_id}
	assert await engine.cancel_for_user("bob") == 1
	assert [row.status for row in await engine.list_for_user("carol", pending_only=True)] == ["pending"]


@pytest.mark.asyncio
async def test_run_forever_sweeps_until_stopped(engine):
	when = datetime.now(timezone.utc) + timedelta(seconds=1)
	engine.poll_interval = 0.05
	swept = []
	sweep = engine.sweep

	async def sweep_once(now=None):
		report = await sweep(now=when)
		swept.append(report.selected)
		engine.stop()
		return report

	engine.sweep = sweep_once
	await engine.schedule("bob", _template(), when)

	await asyncio.wait_for(engine.run_forever(), timeout=1)

	assert swept == [1]


@pytest.mark.asyncio
async def test_naive_end_date_is_read_as_utc(engine):
	when = _soon()
	end = (when + timedelta(days=10)).replace(tzinfo=None)
	row = await engine.schedule("bob", _template(), when, recurrence=Recurrence("daily", end_date=end))

	report = await engine.sweep(now=when)

	assert report.count("rescheduled") == 1
	stored = await engine.get(row.id)
	assert stored.status == "pending"
	assert stored.scheduled_time == when + timedelta(days=1)
	assert stored.recurrence.end_date == end.replace(tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_request_end_date_without_offset_ends_series(engine):
	when = _soon()
	body = {"pattern": "daily", "end_date": (when + timedelta(hours=12)).replace(tzinfo=None).isoformat()}
	recurrence = RecurrenceModel.model_validate(body).to_domain()
	row = await engine.schedule("bob", _template(), when, recurrence=recurrence)

	report = await engine.sweep(now=when)

	assert report.count("expired") == 1
	stored = await engine.get(row.id)
	assert stored.status == "expired"
	assert stored.recurrence.current_occurrence == 1


def test_stored_recurrence_end_date_gets_utc():
	recurrence = Recurrence.from_dict({"pattern": "weekly", "endDate": "2026-12-01T00:00:00"})

	assert recurrence.end_date == datetime(2026, 12, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_bookkeeping_error_after_send_still_records_status(engine, monkeypatch):
	def broken(*args, **kwargs):
		raise RuntimeError("boom")

	monkeypatch.setattr(scheduler_module, "next_occurrence", broken)
	when = _soon()
	row = await engine.schedule("bob", _template(), when, recurrence=Recurrence("daily"))

	report = await engine.sweep(now=when)

	assert report.count("failed") == 1
	stored = await engine.get(row.id)
	assert stored.status == "failed"
	assert stored.execution_error == "record_failed:RuntimeError"


async def _run_briefly(engine, when, seconds=0.2):
	swept = []
	sweep = engine.sweep

	async def sweep_at(now=None):
		report = await sweep(now=when)
		swept.append(report.selected)
		return report

	engine.sweep = sweep_at
	task = asyncio.create_task(engine.run_forever())
	await asyncio.sleep(seconds)
	engine.stop()
	task.cancel()
	with pytest.raises(asyncio.CancelledError):
		await task
	return swept


@pytest.mark.asyncio
async def test_run_forever_waits_an_interval_before_retrying_deferred_row(engine):
	engine.batch_size = 1
	engine.poll_interval = 30
	when = _soon()
	row = await engine.schedule("bob", _template(), when, conditions=Conditions(user_online=True))

	swept = await _run_briefly(engine, when)

	assert swept == [1]
	stored = await engine.get(row.id)
	assert stored.status == "pending"
	assert stored.execution_attempts == 1
	assert stored.execution_error == "user_offline"


@pytest.mark.asyncio
async def test_run_forever_waits_an_interval_before_retrying_failed_row(engine, email_gateway):
	email_gateway.success = False
	engine.batch_size = 1
	engine.poll_interval = 30
	when = _soon()
	row = await engine.schedule("bob", _template(), when, ["email"], max_execution_attempts=3)

	swept = await _run_briefly(engine, when)

	assert swept == [1]
	assert len(email_gateway.sent) == 1
	stored = await engine.get(row.id)
	assert stored.status == "pending"
	assert stored.execution_attempts == 1


@pytest.mark.asyncio
async def test_stale_processing_row_is_released_after_lease(engine):
	when = _soon()
	row = await engine.schedule("bob", _template(), when)
	assert (await engine.repository.claim(row.id, when)).status == "processing"

	report = await engine.sweep(now=when + timedelta(seconds=1))
	assert report.selected == 0
	assert (await engine.get(row.id)).status == "processing"

	later = when + timedelta(seconds=settings.scheduler_processing_lease_seconds + 1)
	report = await engine.sweep(now=later)

	assert report.count("sent") == 1
	stored = await engine.get(row.id)
	assert stored.status == "sent"
	assert stored.execution_attempts == 2


@pytest.mark.asyncio
async def test_stale_processing_row_without_attempts_left_fails(engine, runtime):
	when = _soon()
	row = await engine.schedule("bob", _template(), when, max_execution_attempts=1)
	await engine.repository.claim(row.id, when)

	later = when + timedelta(seconds=settings.scheduler_processing_lease_seconds + 1)
	report = await engine.sweep(now=later)

	assert report.selected == 0
	stored = await engine.get(row.id)
	assert stored.status == "failed"
	assert stored.execution_error == "processing_lease_expired"
	_, total = await runtime.notifications.list_for_user("bob")
	assert total == 0
