"""Pydantic schemas for the notifications API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import Conditions, Recurrence, TimeWindow


class DispatchRequest(BaseModel):
	recipient_id: str = Field(..., min_length=1)
	type: str = Field(..., min_length=1, examples=["event_invite"])
	context: Dict[str, Any] = Field(default_factory=dict)
	channels: List[str] = Field(default_factory=lambda: ["in_app"])


class BulkDispatchRequest(BaseModel):
	recipient_ids: List[str] = Field(..., min_length=1, max_length=1000)
	type: str = Field(..., min_length=1)
	context: Dict[str, Any] = Field(default_factory=dict)
	channels: List[str] = Field(default_factory=lambda: ["in_app"])


class TimeWindowModel(BaseModel):
	start: str = Field(..., pattern=r"^\d{2}:\d{2}$", examples=["09:00"])
	end: str = Field(..., pattern=r"^\d{2}:\d{2}$", examples=["21:00"])


class ConditionsModel(BaseModel):
	user_online: bool = False
	user_active: bool = False
	time_window: Optional[TimeWindowModel] = None
	timezone: str = "UTC"

	def to_domain(self) -> Conditions:
		window = TimeWindow(self.time_window.start, self.time_window.end) if self.time_window else None
		return Conditions(
			user_online=self.user_online,
			user_active=self.user_active,
			time_window=window,
			timezone=self.timezone,
		)


class RecurrenceModel(BaseModel):
	pattern: str = Field(..., examples=["daily"])
	interval: int = Field(default=1, ge=1)
	enabled: bool = True
	days_of_week: List[int] = Field(default_factory=list)
	end_date: Optional[datetime] = None
	max_occurrences: Optional[int] = Field(default=None, ge=0)

	def to_domain(self) -> Recurrence:
		return Recurrence(
			pattern=self.pattern,
			interval=self.interval,
			enabled=self.enabled,
			days_of_week=tuple(sorted(set(self.days_of_week))),
			end_date=self.end_date,
			max_occurrences=self.max_occurrences,
		)


class ScheduleRequest(BaseModel):
	user_id: Optional[str] = Field(default=None, description="Defaults to the caller")
	type: str = Field(..., min_length=1)
	context: Dict[str, Any] = Field(default_factory=dict)
	channels: List[str] = Field(default_factory=lambda: ["in_app"])
	scheduled_time: datetime
	recurrence: Optional[RecurrenceModel] = None
	conditions: Optional[ConditionsModel] = None
	max_execution_attempts: Optional[int] = Field(default=None, ge=1, le=10)


class DeviceTokenRequest(BaseModel):
	token: str = Field(..., min_length=1, max_length=512)


class DeliveredRequest(BaseModel):
	channel: str


__all__ = [
	"BulkDispatchRequest",
	"ConditionsModel",
	"DeliveredRequest",
	"DeviceTokenRequest",
	"DispatchRequest",
	"RecurrenceModel",
	"ScheduleRequest",
	"TimeWindowModel",
]
