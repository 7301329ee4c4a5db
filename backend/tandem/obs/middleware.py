"""Per-request id, latency metrics and access logging for the REST surface."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from tandem.obs import logging as obs_logging
from tandem.obs import metrics
from tandem.settings import settings

try:  # pragma: no cover - tracing extra
	from opentelemetry import trace
except ImportError:  # pragma: no cover - tracing extra not installed
	trace = None  # type: ignore

REQUEST_ID_HEADER = "X-Request-Id"

# Health checks and scrapes are counted but not access-logged.
_QUIET_PREFIXES = ("/health/", "/metrics")


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


def _traceparent() -> str | None:
	if trace is None:
		return None
	context = trace.get_current_span().get_span_context()
	if not context.is_valid:
		return None
	return f"00-{context.trace_id:032x}-{context.span_id:016x}-01"


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app) -> None:
		super().__init__(app)
		self._access_log = obs_logging.get_logger("tandem.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		if not settings.obs_enabled:
			response = await call_next(request)
			response.headers.setdefault(REQUEST_ID_HEADER, request_id)
			return response

		tokens = obs_logging.bind_context(
			request_id=request_id,
			route=request.url.path,
			client_ip=request.client.host if request.client else None,
		)
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			self._access_log.exception("unhandled error", extra={"method": request.method})
			raise
		finally:
			self._record(request, status_code, time.perf_counter() - started)
			obs_logging.reset_context(tokens)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		traceparent = _traceparent()
		if traceparent:
			response.headers.setdefault("traceparent", traceparent)
		return response

	def _record(self, request: Request, status_code: int, elapsed: float) -> None:
		route = _route_template(request)
		metrics.observe_request(route, request.method, status_code, elapsed)
		if request.url.path.startswith(_QUIET_PREFIXES) and status_code < 500:
			return
		self._access_log.info(
			"%s %s -> %s",
			request.method,
			route,
			status_code,
			extra={"status": status_code, "latency_ms": round(elapsed * 1000, 2)},
		)


def install(app) -> None:
	app.add_middleware(ObservabilityMiddleware)
