"""FastAPI endpoints for notification dispatch, scheduling and the inbox."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from eventrelay.api.deps import get_current_user_id, get_runtime
from eventrelay.notifications.schemas import (
	BulkDispatchRequest,
	DeliveredRequest,
	DeviceTokenRequest,
	DispatchRequest,
	ScheduleRequest,
)
from eventrelay.runtime import Runtime

router = APIRouter(prefix="/notifications", tags=["notifications"])
presence_router = APIRouter(prefix="/presence", tags=["presence"])


@router.post("/dispatch", status_code=status.HTTP_201_CREATED)
async def dispatch_endpoint(
	payload: DispatchRequest,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	result = await runtime.service.dispatch_notification(
		payload.recipient_id,
		payload.type,
		payload.context,
		payload.channels,
		sender_id=user_id,
	)
	return {**result.to_dict(), "notification": result.notification.to_dict()}


@router.post("/dispatch/bulk", status_code=status.HTTP_201_CREATED)
async def dispatch_bulk_endpoint(
	payload: BulkDispatchRequest,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	bulk = await runtime.service.dispatch_bulk(
		payload.recipient_ids,
		payload.type,
		payload.context,
		payload.channels,
		sender_id=user_id,
	)
	return {
		"summary": bulk.summary(),
		"results": {recipient: result.to_dict() for recipient, result in bulk.results.items()},
		"errors": bulk.errors,
	}


@router.post("/scheduled", status_code=status.HTTP_201_CREATED)
async def schedule_endpoint(
	payload: ScheduleRequest,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	row = await runtime.service.schedule_notification(
		payload.user_id or user_id,
		payload.type,
		payload.scheduled_time,
		payload.context,
		payload.channels,
		recurrence=payload.recurrence.to_domain() if payload.recurrence else None,
		conditions=payload.conditions.to_domain() if payload.conditions else None,
		max_execution_attempts=payload.max_execution_attempts,
	)
	return row.to_dict()


@router.get("/scheduled")
async def list_scheduled_endpoint(
	pending_only: bool = Query(default=False),
	limit: int = Query(default=50, ge=1, le=100),
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	rows = await runtime.service.list_scheduled(user_id, pending_only=pending_only, limit=limit)
	return {"items": [row.to_dict() for row in rows]}


@router.get("/scheduled/{scheduled_id}")
async def get_scheduled_endpoint(
	scheduled_id: str,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	row = await runtime.service.get_scheduled(scheduled_id, user_id)
	return row.to_dict()


@router.delete("/scheduled/{scheduled_id}")
async def cancel_scheduled_endpoint(
	scheduled_id: str,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	cancelled = await runtime.service.cancel_scheduled(scheduled_id, user_id)
	return {"id": scheduled_id, "cancelled": cancelled}


@router.get("")
async def list_endpoint(
	status_filter: Optional[str] = Query(default=None, alias="status"),
	category: Optional[str] = Query(default=None),
	type: Optional[str] = Query(default=None),
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=20, ge=1, le=100),
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	return await runtime.service.list(
		user_id,
		status=status_filter,
		category=category,
		type=type,
		page=page,
		limit=limit,
	)


@router.get("/unread-count")
async def unread_count_endpoint(
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	return {"unreadCount": await runtime.service.unread_count(user_id)}


@router.get("/stats")
async def stats_endpoint(
	range: str = Query(default="7d"),
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	return await runtime.service.stats(user_id, range)


@router.post("/read-all")
async def mark_all_read_endpoint(
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	return {"updated": await runtime.service.mark_all_read(user_id)}


@router.post("/devices", status_code=status.HTTP_201_CREATED)
async def register_device_endpoint(
	payload: DeviceTokenRequest,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	return {"registered": await runtime.service.register_device(user_id, payload.token)}


@router.delete("/devices/{token}")
async def unregister_device_endpoint(
	token: str,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	return {"unregistered": await runtime.service.unregister_device(user_id, token)}


@router.post("/{notification_id}/read")
async def mark_read_endpoint(
	notification_id: str,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	notification = await runtime.service.mark_read(notification_id, user_id)
	return notification.to_dict()


@router.post("/{notification_id}/archive")
async def archive_endpoint(
	notification_id: str,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	notification = await runtime.service.archive(notification_id, user_id)
	return notification.to_dict()


@router.post("/{notification_id}/delivered")
async def delivered_endpoint(
	notification_id: str,
	payload: DeliveredRequest,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	notification = await runtime.service.mark_delivered(notification_id, payload.channel, user_id)
	return notification.to_dict()


@router.delete("/{notification_id}")
async def delete_endpoint(
	notification_id: str,
	user_id: str = Depends(get_current_user_id),
	runtime: Runtime = Depends(get_runtime),
) -> dict:
	notification = await runtime.service.delete(notification_id, user_id)
	return {"id": notification.id, "status": notification.status}


@presence_router.get("/online-count")
async def online_count_endpoint(runtime: Runtime = Depends(get_runtime)) -> dict:
	return {"online": runtime.registry.online_count(), **runtime.registry.stats()}
