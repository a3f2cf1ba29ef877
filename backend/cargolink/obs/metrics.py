"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"cargolink_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"cargolink_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"cargolink_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"cargolink_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

CHAT_RESOLVE = Counter(
	"cargolink_chat_resolve_total",
	"Conversation resolutions by outcome",
	["outcome"],
)

CHAT_SEND = Counter(
	"cargolink_chat_send_total",
	"Chat message creation requests",
	["result"],
)

CHAT_FEED_EVENTS = Counter(
	"cargolink_chat_feed_events_total",
	"Live feed events seen by message streams",
	["outcome"],
)

CHAT_STREAMS_OPEN = Gauge(
	"cargolink_chat_streams_open",
	"Message streams currently loading or live",
)

CHAT_HISTORY_LATENCY = Histogram(
	"cargolink_chat_history_seconds",
	"History load latency in seconds",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

CHAT_READ_UPDATES = Counter(
	"cargolink_chat_read_updates_total",
	"Messages marked as read",
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_chat_resolve(outcome: str) -> None:
	CHAT_RESOLVE.labels(outcome=outcome).inc()


def inc_chat_send(result: str) -> None:
	CHAT_SEND.labels(result=result).inc()


def inc_chat_feed_event(outcome: str) -> None:
	CHAT_FEED_EVENTS.labels(outcome=outcome).inc()


def chat_stream_opened() -> None:
	CHAT_STREAMS_OPEN.inc()


def chat_stream_closed() -> None:
	CHAT_STREAMS_OPEN.dec()


def observe_chat_history(elapsed_seconds: float) -> None:
	CHAT_HISTORY_LATENCY.observe(elapsed_seconds)


def inc_chat_read(count: int = 1) -> None:
	if count > 0:
		CHAT_READ_UPDATES.inc(count)
