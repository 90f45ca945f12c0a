"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"eventrelay_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"eventrelay_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"eventrelay_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"eventrelay_socketio_events_total",
	"Socket.IO events handled per namespace",
	["namespace", "event"],
)

ONLINE_USERS = Gauge(
	"eventrelay_online_users",
	"Users with a registered live connection",
)

ROOMS_ACTIVE = Gauge(
	"eventrelay_rooms_active",
	"Rooms with at least one live member",
)

BROADCAST_SEND_FAILURES = Counter(
	"eventrelay_broadcast_send_failures_total",
	"Per-handle send failures during fan-out",
	["event"],
)

CHAT_MESSAGES = Counter(
	"eventrelay_chat_messages_total",
	"Chat messages persisted",
	["kind", "room_type"],
)

CHAT_ERRORS = Counter(
	"eventrelay_chat_errors_total",
	"Chat actions rejected",
	["action", "error"],
)

CALL_TRANSITIONS = Counter(
	"eventrelay_call_transitions_total",
	"Call signaling transitions",
	["status"],
)

NOTIFICATION_CHANNEL_OUTCOMES = Counter(
	"eventrelay_notification_channel_total",
	"Notification channel delivery outcomes",
	["channel", "outcome"],
)

NOTIFICATION_DISPATCH_LATENCY = Histogram(
	"eventrelay_notification_dispatch_seconds",
	"Time to attempt delivery on all requested channels",
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

OFFLINE_QUEUE_EVENTS = Counter(
	"eventrelay_offline_queue_total",
	"Offline notification queue operations",
	["op"],
)

PUSH_TOKENS_PRUNED = Counter(
	"eventrelay_push_tokens_pruned_total",
	"Push tokens removed after a token-level gateway failure",
)

SCHEDULER_SWEEPS = Counter(
	"eventrelay_scheduler_sweeps_total",
	"Scheduled notification sweeps executed",
)

SCHEDULER_OUTCOMES = Counter(
	"eventrelay_scheduler_outcomes_total",
	"Scheduled notification execution outcomes",
	["outcome"],
)

CLEANUP_PURGED = Counter(
	"eventrelay_cleanup_purged_total",
	"Rows purged by the cleanup pass",
	["kind"],
)


def observe_request(route: str, method: str, status: int, seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def set_presence(online_users: int, rooms: int) -> None:
	ONLINE_USERS.set(online_users)
	ROOMS_ACTIVE.set(rooms)


def inc_broadcast_failure(event: str) -> None:
	BROADCAST_SEND_FAILURES.labels(event=event).inc()


def inc_chat_message(kind: str, room_type: str) -> None:
	CHAT_MESSAGES.labels(kind=kind, room_type=room_type).inc()


def inc_chat_error(action: str, error: str) -> None:
	CHAT_ERRORS.labels(action=action, error=error).inc()


def inc_call_transition(status: str) -> None:
	CALL_TRANSITIONS.labels(status=status).inc()


def notification_channel(channel: str, outcome: str) -> None:
	NOTIFICATION_CHANNEL_OUTCOMES.labels(channel=channel, outcome=outcome).inc()


def observe_dispatch(seconds: float) -> None:
	NOTIFICATION_DISPATCH_LATENCY.observe(seconds)


def offline_queue(op: str, count: int = 1) -> None:
	OFFLINE_QUEUE_EVENTS.labels(op=op).inc(count)


def inc_push_tokens_pruned(count: int) -> None:
	PUSH_TOKENS_PRUNED.inc(count)


def inc_scheduler_sweep() -> None:
	SCHEDULER_SWEEPS.inc()


def scheduler_outcome(outcome: str) -> None:
	SCHEDULER_OUTCOMES.labels(outcome=outcome).inc()


def cleanup_purged(kind: str, count: int) -> None:
	if count:
		CLEANUP_PURGED.labels(kind=kind).inc(count)
