"""Optional OpenTelemetry spans around matchmaking, lifecycle and reaper work."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from fastapi import FastAPI

from tandem.settings import settings

try:  # pragma: no cover - tracing extra
	from opentelemetry import trace
	from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
	from opentelemetry.instrumentation.asyncpg import AsyncPGInstrumentor
	from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
	from opentelemetry.instrumentation.redis import RedisInstrumentor
	from opentelemetry.sdk.resources import Resource
	from opentelemetry.sdk.trace import TracerProvider
	from opentelemetry.sdk.trace.export import BatchSpanProcessor
except ImportError:  # pragma: no cover - tracing extra not installed
	trace = None  # type: ignore

logger = logging.getLogger(__name__)

_TRACER_NAME = "tandem"
_provider: Optional[Any] = None


def _configured() -> bool:
	if not settings.obs_tracing_enabled:
		return False
	if trace is None:
		logger.warning("tracing enabled but the opentelemetry extra is not installed")
		return False
	if not settings.otel_exporter_otlp_endpoint:
		logger.warning("tracing enabled without OTEL_EXPORTER_OTLP_ENDPOINT")
		return False
	return True


def init_tracing(app: FastAPI) -> Optional[Any]:
	"""Export spans over OTLP and instrument FastAPI, asyncpg and redis."""
	global _provider
	if _provider is not None or not _configured():
		return _provider
	provider = TracerProvider(
		resource=Resource.create(
			{
				"service.name": settings.service_name,
				"service.version": settings.git_commit,
				"deployment.environment": settings.environment,
			}
		)
	)
	exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
	provider.add_span_processor(BatchSpanProcessor(exporter))
	trace.set_tracer_provider(provider)
	FastAPIInstrumentor.instrument_app(app)
	AsyncPGInstrumentor().instrument()
	RedisInstrumentor().instrument()
	_provider = provider
	logger.info("tracing exporter installed", extra={"endpoint": settings.otel_exporter_otlp_endpoint})
	return provider


@contextmanager
def span(name: str, **attributes: Any) -> Iterator[None]:
	"""Wrap a unit of domain work in a span; no-op until tracing is initialised."""
	if _provider is None:
		yield
		return
	tracer = trace.get_tracer(_TRACER_NAME)
	with tracer.start_as_current_span(name) as current:
		for key, value in attributes.items():
			if value is not None:
				current.set_attribute(f"tandem.{key}", value)
		yield


def shutdown_tracing() -> None:
	global _provider
	if _provider is None:
		return
	_provider.shutdown()
	_provider = None
