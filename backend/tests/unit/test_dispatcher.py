import pytest

from eventrelay.errors import UnknownRecipient, ValidationError
from eventrelay.notifications.dispatcher import normalize_channels
from eventrelay.notifications.models import NotificationTemplate


def _template(**overrides) -> NotificationTemplate:
	fields = {"type": "system", "title": "Heads up", "body": "Maintenance <tonight>", "data": {"ref": "r1"}}
	fields.update(overrides)
	return NotificationTemplate(**fields)


def test_normalize_channels_defaults_and_dedupes():
	assert normalize_channels(None) == ("in_app",)
	assert normalize_channels(["Push", "email", "push"]) == ("push", "email")
	with pytest.raises(ValidationError) as excinfo:
		normalize_channels(["pigeon"])
	assert excinfo.value.detail == "unsupported_channel:pigeon"


@pytest.mark.asyncio
async def test_channels_fail_independently(runtime, email_gateway):
	runtime.directory.add("bob", email="bob@example.com")

	result = await runtime.dispatcher.dispatch("bob", _template(), ["push", "email"])

	assert result.per_channel == {"push": "failed", "email": "sent"}
	assert result.reasons == {"push": "no_push_tokens"}
	assert result.success
	stored = await runtime.notifications.get(result.notification.id)
	assert stored.delivery["email"].sent and stored.delivery["email"].sent_at is not None
	assert stored.delivery["push"].failed
	assert stored.delivery["push"].failure_reason == "no_push_tokens"
	(mail,) = email_gateway.sent
	assert mail["address"] == "bob@example.com"
	assert "Maintenance &lt;tonight&gt;" in mail["body"]


@pytest.mark.asyncio
async def test_offline_recipient_gets_queued_copy(runtime):
	runtime.directory.add("bob")

	result = await runtime.dispatcher.dispatch("bob", _template())

	assert result.per_channel == {"in_app": "sent"}
	(queued,) = await runtime.offline_queue.drain("bob")
	assert queued["id"] == result.notification.id
	assert queued["title"] == "Heads up"


@pytest.mark.asyncio
async def test_online_recipient_gets_live_notification(runtime, make_handle):
	runtime.directory.add("bob")
	bob = make_handle("bob")
	runtime.registry.register("bob", bob)

	result = await runtime.dispatcher.dispatch("bob", _template(), sender_id="alice")

	(live,) = bob.named("notification")
	assert live["id"] == result.notification.id
	assert live["senderId"] == "alice"
	assert await runtime.offline_queue.size("bob") == 0


@pytest.mark.asyncio
async def test_push_batches_and_prunes_invalid_tokens(runtime, push_gateway):
	runtime.directory.add("bob")
	push_gateway.max_batch = 2
	push_gateway.invalid.add("tok-dead")
	for token in ("tok-a", "tok-b", "tok-dead"):
		await runtime.devices.register("bob", token)

	result = await runtime.dispatcher.dispatch("bob", _template(priority="high"), ["push"])

	assert result.per_channel == {"push": "sent"}
	assert [len(batch) for batch in push_gateway.batches] == [2, 1]
	assert push_gateway.messages[0].data["notificationId"] == result.notification.id
	assert await runtime.devices.tokens("bob") == {"tok-a", "tok-b"}


@pytest.mark.asyncio
async def test_push_failure_reports_gateway_error(runtime, push_gateway):
	runtime.directory.add("bob")
	push_gateway.failing.add("tok-a")
	await runtime.devices.register("bob", "tok-a")

	result = await runtime.dispatcher.dispatch("bob", _template(), ["push"])

	assert not result.success
	assert result.reasons == {"push": "MessageRateExceeded"}
	# rate limited tokens are still valid
	assert await runtime.devices.tokens("bob") == {"tok-a"}


@pytest.mark.asyncio
async def test_disabled_channel_is_skipped_and_missing_contacts_fail(runtime, sms_gateway):
	runtime.directory.add("bob", disabled_channels=["email"])

	result = await runtime.dispatcher.dispatch("bob", _template(), ["in_app", "email", "sms"])

	assert result.per_channel == {"in_app": "sent", "email": "skipped", "sms": "failed"}
	assert result.reasons == {"email": "disabled_by_user", "sms": "no_phone_number"}
	assert sms_gateway.sent == []


@pytest.mark.asyncio
async def test_sms_text_is_truncated(runtime, sms_gateway):
	runtime.directory.add("bob", phone="+15145550101")

	await runtime.dispatcher.dispatch("bob", _template(body="x" * 300), ["sms"])

	(sms,) = sms_gateway.sent
	assert sms["phone"] == "+15145550101"
	assert len(sms["body"]) == 160


@pytest.mark.asyncio
async def test_unknown_recipient_raises_before_persisting(runtime):
	with pytest.raises(UnknownRecipient):
		await runtime.dispatcher.dispatch("ghost", _template())

	_, total = await runtime.notifications.list_for_user("ghost")
	assert total == 0


@pytest.mark.asyncio
async def test_bulk_dispatch_summarises_results(runtime, email_gateway):
	runtime.directory.add("bob", email="bob@example.com")
	runtime.directory.add("carol")

	bulk = await runtime.dispatcher.dispatch_bulk(["bob", "carol", "bob", "ghost"], _template(), ["email"])

	assert bulk.summary() == {"total": 3, "successful": 1, "failed": 2}
	assert bulk.errors == {"ghost": "unknown_recipient"}
	assert bulk.results["carol"].reasons == {"email": "no_email_address"}
	assert len(email_gateway.sent) == 1
