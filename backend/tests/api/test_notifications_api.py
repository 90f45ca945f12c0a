from datetime import datetime, timedelta, timezone

import pytest

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture(autouse=True)
def recipients(runtime):
	runtime.directory.add("alice", email="alice@example.com")
	runtime.directory.add("bob", email="bob@example.com")


async def _dispatch(api_client, **overrides) -> dict:
	body = {
		"recipient_id": "bob",
		"type": "event_invite",
		"context": {"actorName": "Alice", "eventTitle": "Picnic", "eventId": "e1"},
	}
	body.update(overrides)
	resp = await api_client.post("/notifications/dispatch", json=body, headers=ALICE)
	assert resp.status_code == 201, resp.text
	return resp.json()


@pytest.mark.asyncio
async def test_missing_identity_is_rejected(api_client):
	resp = await api_client.get("/notifications")

	assert resp.status_code == 401
	assert resp.json()["detail"] == "missing_user"


@pytest.mark.asyncio
async def test_dispatch_then_list_and_read(api_client):
	sent = await _dispatch(api_client, channels=["in_app", "email"])

	assert sent["success"] is True
	assert sent["perChannel"] == {"in_app": "sent", "email": "sent"}
	assert sent["notification"]["body"] == 'Alice invited you to "Picnic"'
	assert sent["notification"]["senderId"] == "alice"

	listing = (await api_client.get("/notifications", headers=BOB)).json()
	assert listing["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}
	assert listing["unreadCount"] == 1

	resp = await api_client.post(f"/notifications/{sent['notificationId']}/read", headers=BOB)
	assert resp.status_code == 200
	assert resp.json()["isRead"] is True
	assert (await api_client.get("/notifications/unread-count", headers=BOB)).json() == {"unreadCount": 0}


@pytest.mark.asyncio
async def test_only_recipient_may_change_a_notification(api_client):
	sent = await _dispatch(api_client)

	resp = await api_client.post(f"/notifications/{sent['notificationId']}/read", headers=ALICE)

	assert resp.status_code == 403
	body = resp.json()
	assert body["code"] == "forbidden"
	assert body["request_id"]


@pytest.mark.asyncio
async def test_deleted_notification_is_gone(api_client):
	sent = await _dispatch(api_client)

	resp = await api_client.delete(f"/notifications/{sent['notificationId']}", headers=BOB)
	assert resp.json()["status"] == "deleted"

	resp = await api_client.post(f"/notifications/{sent['notificationId']}/archive", headers=BOB)
	assert resp.status_code == 404
	assert (await api_client.get("/notifications", headers=BOB)).json()["pagination"]["total"] == 0


@pytest.mark.asyncio
async def test_dispatch_validation_errors(api_client):
	resp = await api_client.post(
		"/notifications/dispatch",
		json={"recipient_id": "bob", "type": "system", "channels": ["fax"]},
		headers=ALICE,
	)
	assert resp.status_code == 422
	assert resp.json()["detail"] == "unsupported_channel:fax"

	resp = await api_client.post(
		"/notifications/dispatch",
		json={"recipient_id": "nobody", "type": "system"},
		headers=ALICE,
	)
	assert resp.status_code == 404
	assert resp.json()["code"] == "unknown_recipient"

	resp = await api_client.post("/notifications/dispatch", json={"type": "system"}, headers=ALICE)
	assert resp.status_code == 422
	assert resp.json()["detail"] == "validation_error"


@pytest.mark.asyncio
async def test_bulk_dispatch_reports_summary(api_client):
	resp = await api_client.post(
		"/notifications/dispatch/bulk",
		json={"recipient_ids": ["alice", "bob", "ghost"], "type": "system", "context": {"message": "Hi all"}},
		headers=ALICE,
	)

	assert resp.status_code == 201
	body = resp.json()
	assert body["summary"] == {"total": 3, "successful": 2, "failed": 1}
	assert body["errors"] == {"ghost": "unknown_recipient"}


@pytest.mark.asyncio
async def test_schedule_lifecycle(api_client):
	when = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
	resp = await api_client.post(
		"/notifications/scheduled",
		json={
			"type": "event_reminder",
			"context": {"eventTitle": "Picnic", "minutesBefore": 30},
			"scheduled_time": when,
			"recurrence": {"pattern": "weekly", "max_occurrences": 4},
			"conditions": {"time_window": {"start": "08:00", "end": "22:00"}, "timezone": "America/Toronto"},
		},
		headers=ALICE,
	)
	assert resp.status_code == 201, resp.text
	row = resp.json()
	assert row["userId"] == "alice"
	assert row["status"] == "pending"
	assert row["template"]["body"] == '"Picnic" starts in 30 minutes'
	assert row["recurrence"]["maxOccurrences"] == 4

	assert (await api_client.get(f"/notifications/scheduled/{row['id']}", headers=BOB)).status_code == 403
	items = (await api_client.get("/notifications/scheduled", headers=ALICE)).json()["items"]
	assert [item["id"] for item in items] == [row["id"]]

	resp = await api_client.delete(f"/notifications/scheduled/{row['id']}", headers=ALICE)
	assert resp.json() == {"id": row["id"], "cancelled": True}
	fetched = (await api_client.get(f"/notifications/scheduled/{row['id']}", headers=ALICE)).json()
	assert fetched["status"] == "cancelled"


@pytest.mark.asyncio
async def test_schedule_rejects_bad_recurrence(api_client):
	when = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
	resp = await api_client.post(
		"/notifications/scheduled",
		json={"type": "system", "scheduled_time": when, "recurrence": {"pattern": "hourly"}},
		headers=ALICE,
	)

	assert resp.status_code == 422
	assert resp.json()["detail"] == "invalid_recurrence_pattern:hourly"


@pytest.mark.asyncio
async def test_stats_and_read_all(api_client):
	await _dispatch(api_client)
	await _dispatch(api_client, type="social_follow", context={"actorName": "Alice"})

	stats = (await api_client.get("/notifications/stats", params={"range": "24h"}, headers=BOB)).json()
	assert stats["total"] == 2
	assert stats["unread"] == 2
	assert {entry["type"] for entry in stats["byType"]} == {"event_invite", "social_follow"}

	assert (await api_client.post("/notifications/read-all", headers=BOB)).json() == {"updated": 2}
	assert (await api_client.get("/notifications/stats", params={"range": "1y"}, headers=BOB)).status_code == 422


@pytest.mark.asyncio
async def test_delivery_confirmation(api_client):
	sent = await _dispatch(api_client)
	url = f"/notifications/{sent['notificationId']}/delivered"

	resp = await api_client.post(url, json={"channel": "in_app"}, headers=BOB)
	assert resp.json()["delivery"]["in_app"]["delivered"] is True

	resp = await api_client.post(url, json={"channel": "sms"}, headers=BOB)
	assert resp.status_code == 422


@pytest.mark.asyncio
async def test_device_tokens_round_trip(api_client, runtime):
	resp = await api_client.post("/notifications/devices", json={"token": "device-token-1"}, headers=BOB)
	assert resp.status_code == 201
	assert resp.json() == {"registered": True}
	assert await runtime.devices.tokens("bob") == {"device-token-1"}

	resp = await api_client.delete("/notifications/devices/device-token-1", headers=BOB)
	assert resp.json() == {"unregistered": True}
	assert await runtime.devices.tokens("bob") == set()


@pytest.mark.asyncio
async def test_online_count_and_health(api_client, runtime, make_handle):
	runtime.registry.register("alice", make_handle("alice"))

	presence = (await api_client.get("/presence/online-count")).json()
	assert presence["online"] == 1
	assert presence["connections"] == 1

	resp = await api_client.get("/health")
	assert resp.status_code == 200
