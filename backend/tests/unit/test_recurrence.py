from datetime import datetime, timezone

import pytest

from eventrelay.errors import ValidationError
from eventrelay.notifications.models import Conditions, Recurrence, TimeWindow
from eventrelay.notifications.recurrence import (
	advance,
	evaluate_conditions,
	next_occurrence,
	validate_conditions,
	validate_recurrence,
	within_window,
)
from eventrelay.realtime.registry import ConnectionRegistry

UTC = timezone.utc


def _at(*args) -> datetime:
	return datetime(*args, tzinfo=UTC)


def test_daily_weekly_and_interval_steps():
	start = _at(2024, 3, 1, 9, 0)

	assert advance(start, Recurrence("daily")) == _at(2024, 3, 2, 9, 0)
	assert advance(start, Recurrence("daily", interval=3)) == _at(2024, 3, 4, 9, 0)
	assert advance(start, Recurrence("weekly")) == _at(2024, 3, 8, 9, 0)
	assert advance(start, Recurrence("yearly")) == _at(2025, 3, 1, 9, 0)


def test_monthly_clamps_to_last_day():
	assert advance(_at(2024, 1, 31, 8, 0), Recurrence("monthly")) == _at(2024, 2, 29, 8, 0)
	assert advance(_at(2023, 1, 31, 8, 0), Recurrence("monthly")) == _at(2023, 2, 28, 8, 0)
	assert advance(_at(2024, 11, 30, 8, 0), Recurrence("monthly", interval=2)) == _at(2025, 1, 30, 8, 0)


def test_custom_days_pick_next_listed_weekday_and_wrap():
	# 2024-03-06 is a Wednesday (3 with Sunday=0)
	wednesday = _at(2024, 3, 6, 18, 0)

	assert advance(wednesday, Recurrence("custom", days_of_week=(1, 5))) == _at(2024, 3, 8, 18, 0)
	assert advance(wednesday, Recurrence("custom", days_of_week=(1, 2))) == _at(2024, 3, 11, 18, 0)
	assert advance(wednesday, Recurrence("custom", days_of_week=(3,))) == _at(2024, 3, 13, 18, 0)
	assert advance(wednesday, Recurrence("custom")) == _at(2024, 3, 7, 18, 0)


def test_next_occurrence_stops_at_limits():
	start = _at(2024, 3, 1, 9, 0)

	assert next_occurrence(start, None) is None
	assert next_occurrence(start, Recurrence("daily", enabled=False)) is None
	assert next_occurrence(start, Recurrence("daily", max_occurrences=2, current_occurrence=2)) is None
	assert next_occurrence(start, Recurrence("daily", end_date=_at(2024, 3, 1, 23, 0))) is None
	assert next_occurrence(start, Recurrence("daily", end_date=_at(2024, 3, 2, 9, 0))) == _at(2024, 3, 2, 9, 0)


def test_validate_recurrence_rejects_bad_input():
	with pytest.raises(ValidationError):
		validate_recurrence(Recurrence("hourly"))
	with pytest.raises(ValidationError):
		validate_recurrence(Recurrence("daily", interval=0))
	with pytest.raises(ValidationError):
		validate_recurrence(Recurrence("custom", days_of_week=(7,)))
	validate_recurrence(Recurrence("custom", days_of_week=(0, 6)))


def test_time_window_is_inclusive_and_can_cross_midnight():
	overnight = TimeWindow(start="22:00", end="06:00")
	office = TimeWindow(start="09:00", end="17:00")

	assert within_window(overnight, _at(2024, 3, 1, 23, 30), "UTC")
	assert within_window(overnight, _at(2024, 3, 1, 6, 0), "UTC")
	assert not within_window(overnight, _at(2024, 3, 1, 12, 0), "UTC")
	assert within_window(office, _at(2024, 3, 1, 17, 0), "UTC")
	assert not within_window(office, _at(2024, 3, 1, 17, 1), "UTC")


def test_time_window_uses_recipient_timezone():
	office = TimeWindow(start="09:00", end="17:00")
	# 13:00 UTC is 09:00 in Toronto during daylight time
	assert within_window(office, _at(2024, 6, 3, 13, 0), "America/Toronto")
	assert not within_window(office, _at(2024, 6, 3, 12, 0), "America/Toronto")


def test_validate_conditions_rejects_unknown_zone_and_bad_clock():
	with pytest.raises(ValidationError):
		validate_conditions(Conditions(timezone="Mars/Olympus"))
	with pytest.raises(ValidationError):
		validate_conditions(Conditions(time_window=TimeWindow(start="9am", end="17:00")))


def test_evaluate_conditions_reports_first_failing_gate():
	registry = ConnectionRegistry()
	now = _at(2024, 3, 1, 12, 0)

	gate = evaluate_conditions(Conditions(user_online=True), "alice", registry=registry, now=now, activity_window=300)
	assert (gate.allowed, gate.reason) == (False, "user_offline")

	registry.register("alice", "h1")
	gate = evaluate_conditions(
		Conditions(user_online=True, time_window=TimeWindow("20:00", "21:00")),
		"alice",
		registry=registry,
		now=now,
		activity_window=300,
	)
	assert (gate.allowed, gate.reason) == (False, "outside_time_window")

	assert evaluate_conditions(None, "alice", registry=registry, now=now, activity_window=300).allowed
	assert evaluate_conditions(Conditions(user_active=True), "alice", registry=registry, now=now, activity_window=300).allowed
