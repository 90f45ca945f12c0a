"""Recurrence arithmetic and delivery gating for scheduled notifications."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from eventrelay.errors import ValidationError
from eventrelay.realtime.registry import ConnectionRegistry

from .models import PATTERNS, Conditions, Recurrence, TimeWindow

_LOG = logging.getLogger(__name__)


def _add_months(value: datetime, months: int) -> datetime:
	total = value.month - 1 + months
	year = value.year + total // 12
	month = total % 12 + 1
	day = min(value.day, calendar.monthrange(year, month)[1])
	return value.replace(year=year, month=month, day=day)


def _sunday_based(value: datetime) -> int:
	# datetime.weekday() is Monday=0; schedules use Sunday=0
	return (value.weekday() + 1) % 7


def _next_custom(value: datetime, days_of_week) -> datetime:
	if not days_of_week:
		return value + timedelta(days=1)
	days = sorted(set(days_of_week))
	current = _sunday_based(value)
	later = [day for day in days if day > current]
	if later:
		return value + timedelta(days=later[0] - current)
	return value + timedelta(days=7 - current + days[0])


def advance(value: datetime, recurrence: Recurrence) -> datetime:
	"""Move ``value`` forward by one step of the recurrence pattern."""
	step = max(1, int(recurrence.interval or 1))
	pattern = recurrence.pattern
	if pattern == "daily":
		return value + timedelta(days=step)
	if pattern == "weekly":
		return value + timedelta(weeks=step)
	if pattern == "monthly":
		return _add_months(value, step)
	if pattern == "yearly":
		return _add_months(value, 12 * step)
	if pattern == "custom":
		return _next_custom(value, recurrence.days_of_week)
	raise ValidationError(f"invalid_recurrence_pattern:{pattern}")


def next_occurrence(scheduled_time: datetime, recurrence: Optional[Recurrence]) -> Optional[datetime]:
	"""Return the next fire time, or None when the series has run out.

	``recurrence.current_occurrence`` must already count the send that just happened.
	"""
	if recurrence is None or not recurrence.enabled:
		return None
	if recurrence.exhausted:
		return None
	candidate = advance(scheduled_time, recurrence)
	if recurrence.end_date is not None and candidate > recurrence.end_date:
		return None
	return candidate


def validate_recurrence(recurrence: Recurrence) -> None:
	if recurrence.pattern not in PATTERNS:
		raise ValidationError(f"invalid_recurrence_pattern:{recurrence.pattern}")
	if recurrence.interval < 1:
		raise ValidationError("invalid_recurrence_interval")
	if any(day < 0 or day > 6 for day in recurrence.days_of_week):
		raise ValidationError("invalid_days_of_week")
	if recurrence.max_occurrences is not None and recurrence.max_occurrences < 0:
		raise ValidationError("invalid_max_occurrences")


def _parse_clock(value: str) -> dtime:
	try:
		hours, minutes = value.split(":", 1)
		return dtime(int(hours), int(minutes))
	except (AttributeError, ValueError) as exc:
		raise ValidationError(f"invalid_time_window:{value}") from exc


def _zone(name: str) -> ZoneInfo:
	try:
		return ZoneInfo(name or "UTC")
	except (ZoneInfoNotFoundError, ValueError) as exc:
		raise ValidationError(f"invalid_timezone:{name}") from exc


def validate_conditions(conditions: Conditions) -> None:
	_zone(conditions.timezone)
	if conditions.time_window is not None:
		_parse_clock(conditions.time_window.start)
		_parse_clock(conditions.time_window.end)


def within_window(window: TimeWindow, now: datetime, timezone_name: str) -> bool:
	"""Inclusive ``HH:MM`` window check in the given timezone; start > end wraps midnight."""
	start = _parse_clock(window.start)
	end = _parse_clock(window.end)
	local = now.astimezone(_zone(timezone_name))
	current = dtime(local.hour, local.minute)
	if start <= end:
		return start <= current <= end
	return current >= start or current <= end


@dataclass(frozen=True, slots=True)
class GateResult:
	allowed: bool
	reason: Optional[str] = None


def evaluate_conditions(
	conditions: Optional[Conditions],
	user_id: str,
	*,
	registry: ConnectionRegistry,
	now: datetime,
	activity_window: float,
) -> GateResult:
	if conditions is None:
		return GateResult(True)
	if conditions.user_online and not registry.is_online(user_id):
		return GateResult(False, "user_offline")
	if conditions.user_active and not registry.is_active(user_id, activity_window):
		return GateResult(False, "user_inactive")
	if conditions.time_window is not None:
		try:
			inside = within_window(conditions.time_window, now, conditions.timezone)
		except ValidationError as exc:
			_LOG.warning("recurrence.bad_time_window", extra={"user_id": user_id, "detail": exc.detail})
			return GateResult(False, exc.detail)
		if not inside:
			return GateResult(False, "outside_time_window")
	return GateResult(True)


__all__ = [
	"GateResult",
	"advance",
	"evaluate_conditions",
	"next_occurrence",
	"validate_conditions",
	"validate_recurrence",
	"within_window",
]
