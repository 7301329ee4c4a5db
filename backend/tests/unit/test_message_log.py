from datetime import datetime, timezone

import pytest

from tandem.domain.conversations.exceptions import MessageRejected
from tandem.domain.conversations.messages import MessageLog, preview_of
from tandem.settings import settings


@pytest.mark.asyncio
async def test_append_and_read_back_in_order():
	log = MessageLog()
	sent_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

	await log.append("chat-1", "alice", "hi", client_msg_id="c-1", now=sent_at)
	await log.append("chat-1", "bob", "  hello  ")

	history = await log.history("chat-1")
	assert [message.body for message in history] == ["hi", "hello"]
	assert history[0].client_msg_id == "c-1"
	assert history[0].created_at == sent_at


@pytest.mark.asyncio
async def test_empty_and_oversized_messages_are_rejected(monkeypatch):
	monkeypatch.setattr(settings, "message_max_length", 5)
	log = MessageLog()

	with pytest.raises(MessageRejected):
		await log.append("chat-1", "alice", "   ")
	with pytest.raises(MessageRejected) as exc:
		await log.append("chat-1", "alice", "too long")
	assert exc.value.reason == "message_too_long"


@pytest.mark.asyncio
async def test_log_is_capped(monkeypatch):
	monkeypatch.setattr(settings, "message_log_maxlen", 3)
	log = MessageLog()
	for idx in range(5):
		await log.append("chat-1", "alice", f"m{idx}")

	history = await log.history("chat-1", limit=10)

	assert [message.body for message in history] == ["m2", "m3", "m4"]


def test_preview_is_truncated(monkeypatch):
	monkeypatch.setattr(settings, "message_preview_length", 4)

	assert preview_of("abcdefgh") == "abcd"
