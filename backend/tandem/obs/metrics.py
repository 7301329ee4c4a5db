"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

import time

from prometheus_client import Counter, Gauge, Histogram, Summary


REQUEST_COUNTER = Counter(
	"tandem_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"tandem_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"tandem_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"tandem_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

FANOUT_FAILURES = Counter(
	"tandem_fanout_failures_total",
	"Fan-out emits that raised and were dropped",
	["event"],
)

MATCH_REQUESTS = Counter(
	"tandem_match_requests_total",
	"Search requests segmented by outcome",
	["result"],
)

MATCH_CLAIM_CONFLICTS = Counter(
	"tandem_match_claim_conflicts_total",
	"Atomic claims lost to a concurrent operation",
	["kind"],
)

MATCH_QUEUE_WAIT = Histogram(
	"tandem_match_queue_wait_seconds",
	"Time a searcher waited in the queue before pairing",
	buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
)

CHAT_TRANSITIONS = Counter(
	"tandem_chat_transitions_total",
	"Conversation lifecycle transitions",
	["transition"],
)

STORE_RETRIES = Counter(
	"tandem_store_retries_total",
	"Storage operations retried after transient failures",
	["operation", "result"],
)

REAPER_REAPED = Counter(
	"tandem_reaper_reaped_total",
	"Records force-expired by the reaper",
	["kind"],
)

REDIS_UP = Gauge("tandem_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("tandem_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("tandem_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("tandem_postgres_latency_seconds", "Postgres ping latency (seconds)")

BACKGROUND_RUNS = Counter(
	"tandem_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"tandem_jobs_duration_seconds",
	"Background job duration in seconds",
	["name"],
	buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

BACKGROUND_LAST_SUCCESS = Gauge(
	"tandem_jobs_last_success_timestamp_seconds",
	"Unix time of the last successful run per job",
	["name"],
)

_last_success: dict[str, float] = {}


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def fanout_failure(event: str) -> None:
	FANOUT_FAILURES.labels(event=event).inc()


def match_request(result: str) -> None:
	MATCH_REQUESTS.labels(result=result).inc()


def claim_conflict(kind: str) -> None:
	MATCH_CLAIM_CONFLICTS.labels(kind=kind).inc()


def observe_queue_wait(seconds: float) -> None:
	MATCH_QUEUE_WAIT.observe(max(0.0, seconds))


def chat_transition(transition: str) -> None:
	CHAT_TRANSITIONS.labels(transition=transition).inc()


def store_retry(operation: str, result: str) -> None:
	STORE_RETRIES.labels(operation=operation, result=result).inc()


def reaped(kind: str, count: int) -> None:
	if count:
		REAPER_REAPED.labels(kind=kind).inc(count)


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
	if result == "ok":
		now = time.time()
		_last_success[name] = now
		BACKGROUND_LAST_SUCCESS.labels(name=name).set(now)


def last_success_age(name: str) -> float | None:
	"""Seconds since ``name`` last completed, or ``None`` if it never has in this process."""
	last = _last_success.get(name)
	return None if last is None else max(0.0, time.time() - last)
