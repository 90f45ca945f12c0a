from eventrelay.notifications import content


def test_event_invite_renders_actor_and_event():
	built = content.build(
		"event_invite",
		{"actorName": "Maya", "eventTitle": "Board games night", "eventId": "e1", "actorId": "u9"},
	)

	assert built.title == "Event invitation"
	assert built.body == 'Maya invited you to "Board games night"'
	assert built.priority == "high"
	assert built.category == "events"
	assert built.data == {"type": "event_invite", "screen": "EventDetails", "eventId": "e1", "inviterId": "u9"}


def test_missing_context_uses_placeholders():
	built = content.build("tribe_joined", {})

	assert built.body == 'Someone joined "a tribe"'
	assert built.data == {"type": "tribe_joined", "screen": "TribeDetails"}


def test_event_update_message_follows_update_type():
	assert content.build("event_update", {"updateType": "location"}).body == "The event location has changed"
	assert content.build("event_update", {"updateType": "weird"}).body == "The event has been updated"


def test_chat_message_preview_is_truncated():
	built = content.build("chat_message", {"actorName": "Lee", "messageText": "a" * 150})

	assert built.title == "New message from Lee"
	assert built.body == "a" * 100 + "..."
	assert content.build("chat_message", {"actorName": "Lee"}).body == "Sent you a message"


def test_preview_keeps_short_text():
	assert content.preview("  short  ") == "short"
	assert content.preview("b" * 100) == "b" * 100


def test_unknown_type_falls_back_to_generic():
	built = content.build("something_new", {"title": "Heads up", "message": "Maintenance tonight"})

	assert built.title == "Heads up"
	assert built.body == "Maintenance tonight"
	assert built.category == "system"
	assert content.build("something_new").body == "You have a new notification"


def test_priority_override_only_accepts_known_levels():
	assert content.build("system", {"priority": "urgent"}).priority == "urgent"
	assert content.build("system", {"priority": "critical"}).priority == "normal"


def test_as_template_carries_rendered_fields():
	template = content.build("security", {"title": "New login", "message": "From Montreal"}).as_template("security")

	assert template.type == "security"
	assert template.priority == "urgent"
	assert template.to_dict()["body"] == "From Montreal"


def test_every_known_type_renders_without_context():
	for domain_type in content.supported_types():
		built = content.build(domain_type)
		assert built.title
		assert built.data["type"] == domain_type
