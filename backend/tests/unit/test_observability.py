import json
import logging

import pytest

from tandem.obs import health, metrics
from tandem.obs import logging as obs_logging
from tandem.settings import settings


def _format(message: str, **extra) -> dict:
	record = logging.LogRecord("tandem.test", logging.INFO, __file__, 1, message, (), None)
	for key, value in extra.items():
		setattr(record, key, value)
	return json.loads(obs_logging.JSONLogFormatter().format(record))


def test_message_text_is_redacted_and_chat_context_attached():
	tokens = obs_logging.bind_context(user_id="alice", chat_id="chat-1")
	try:
		payload = _format("message sent", body="secret plans", last_message_preview="secret", count=2)
	finally:
		obs_logging.reset_context(tokens)

	assert payload["body"] == "[redacted]"
	assert payload["last_message_preview"] == "[redacted]"
	assert payload["count"] == 2
	assert payload["chat_id"] == "chat-1"
	assert payload["user_id"] == "alice"


def test_context_does_not_leak_after_reset():
	tokens = obs_logging.bind_context(sid="sid-1")
	obs_logging.reset_context(tokens)

	assert "sid" not in _format("after")


def test_sampling_never_drops_warnings(monkeypatch):
	monkeypatch.setattr(settings, "obs_log_sampling_rate_info", 0.0)
	sampler = obs_logging.InfoSamplingFilter()

	info = logging.LogRecord("tandem", logging.INFO, __file__, 1, "info", (), None)
	warning = logging.LogRecord("tandem", logging.WARNING, __file__, 1, "warn", (), None)

	assert sampler.filter(info) is False
	assert sampler.filter(warning) is True


@pytest.mark.asyncio
async def test_stale_reaper_degrades_readiness(monkeypatch):
	monkeypatch.setattr(settings, "reaper_enabled", True)
	monkeypatch.setattr(settings, "reaper_interval_seconds", 60)
	monkeypatch.setattr(metrics, "last_success_age", lambda name: 600.0)

	status_code, payload = await health.readiness()

	assert status_code == 200
	assert payload["status"] == "degraded"
	assert payload["checks"]["reaper"] == {"ok": False, "enabled": True, "last_success_s": 600.0}
