"""JSON log lines carrying request, socket and chat context.

Context is bound per HTTP request (middleware) or per socket event (namespace handlers)
through context vars, so domain code logs with plain ``logger.info`` calls.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tandem.settings import settings

try:  # pragma: no cover - tracing extra
	from opentelemetry import trace as otel_trace
except ImportError:  # pragma: no cover - tracing extra not installed
	otel_trace = None  # type: ignore

_ROOT_LOGGER = "tandem"

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"tandem_log_{name}", default=None)
	for name in ("request_id", "route", "user_id", "ip", "sid", "chat_id")
}

# Message text must never reach the log stream, only ids and counts.
_REDACTED_KEYS = ("token", "secret", "authorization", "password", "body", "preview", "content")
_MAX_STRING = 256
_MAX_ITEMS = 10

_RECORD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {
	"message",
	"asctime",
	"taskName",
}


def bind_context(
	*,
	request_id: Optional[str] = None,
	route: Optional[str] = None,
	user_id: Optional[str] = None,
	client_ip: Optional[str] = None,
	sid: Optional[str] = None,
	chat_id: Optional[str] = None,
) -> Dict[str, Token]:
	values = {
		"request_id": request_id,
		"route": route,
		"user_id": user_id,
		"ip": client_ip,
		"sid": sid,
		"chat_id": chat_id,
	}
	return {key: _CONTEXT[key].set(value) for key, value in values.items() if value is not None}


def reset_context(tokens: Dict[str, Token]) -> None:
	for key, token in tokens.items():
		_CONTEXT[key].reset(token)


def _clip(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING else value[:_MAX_STRING] + "..."
	if isinstance(value, dict):
		items = list(value.items())
		clipped = {str(key): _scrub(str(key), nested) for key, nested in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			clipped["_truncated"] = len(items) - _MAX_ITEMS
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		items = list(value)
		return [_clip(item) for item in items[:_MAX_ITEMS]] + (["..."] if len(items) > _MAX_ITEMS else [])
	if isinstance(value, datetime):
		return value.isoformat()
	return value


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACTED_KEYS):
		return "[redacted]"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update({key: var.get() for key, var in _CONTEXT.items() if var.get()})
		if otel_trace is not None:
			context = otel_trace.get_current_span().get_span_context()
			if context.is_valid:
				payload["trace_id"] = format(context.trace_id, "032x")
				payload["span_id"] = format(context.span_id, "016x")
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS and key not in payload:
				payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a ``obs_log_sampling_rate_info`` share of INFO records; never drop other levels."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = min(1.0, max(0.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_ROOT_LOGGER)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)
