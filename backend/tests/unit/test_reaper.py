import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tandem.domain.conversations.lifecycle import LifecycleEngine
from tandem.domain.conversations.models import ChatState
from tandem.domain.conversations.reaper import Reaper, run_reaper
from tandem.domain.matching.models import QueueStatus
from tandem.domain.matching.service import MatchService
from tandem.domain.matching.store import QueueStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_unmatched_search_expires_after_queue_ttl(fanout):
	service = MatchService()
	await service.request_search("carol", now=T0)

	summary = await Reaper().sweep(now=T0 + timedelta(minutes=5, seconds=1))

	assert summary["queue_expired"] == 1
	entry = await QueueStore().get("carol")
	assert entry.status is QueueStatus.EXPIRED
	assert fanout.to_user("carol", "search-timeout")
	state = await service.queue_status("carol", now=T0 + timedelta(minutes=6))
	assert state.searching is False
	assert state.timed_out is True
	assert await QueueStore().get("carol") is None


@pytest.mark.asyncio
async def test_search_is_left_alone_before_deadline():
	service = MatchService()
	await service.request_search("carol", now=T0)

	summary = await Reaper().sweep(now=T0 + timedelta(minutes=4))

	assert summary["queue_expired"] == 0
	assert (await service.queue_status("carol", now=T0 + timedelta(minutes=4))).searching


@pytest.mark.asyncio
async def test_overdue_temporary_chat_is_terminated_once(fanout):
	service = MatchService()
	await service.request_search("alice", now=T0)
	outcome = await service.request_search("bob", now=T0)
	later = T0 + timedelta(minutes=15, seconds=1)
	reaper = Reaper()

	first = await reaper.sweep(now=later)
	second = await reaper.sweep(now=later)

	assert first["chats_expired"] == 1
	assert second["chats_expired"] == 0
	assert len(fanout.named("chat-terminated")) == 2
	for user_id in ("alice", "bob"):
		assert fanout.to_user(user_id, "chat-terminated")[0]["reason"] == "expired"
		assert await QueueStore().get(user_id) is None
	conversation = await LifecycleEngine().store.get(outcome.chat_id)
	assert conversation.state is ChatState.TERMINATED


@pytest.mark.asyncio
async def test_overlapping_sweeps_do_not_duplicate_notifications(fanout):
	service = MatchService()
	await service.request_search("alice", now=T0)
	await service.request_search("bob", now=T0)
	await service.request_search("carol", now=T0)
	later = T0 + timedelta(minutes=16)

	results = await asyncio.gather(Reaper().sweep(now=later), Reaper().sweep(now=later))

	assert sum(result["chats_expired"] for result in results) == 1
	assert sum(result["queue_expired"] for result in results) == 1
	assert len(fanout.named("chat-terminated")) == 2
	assert len(fanout.named("search-timeout")) == 1


@pytest.mark.asyncio
async def test_users_can_search_again_after_chat_expiry():
	service = MatchService()
	await service.request_search("alice", now=T0)
	await service.request_search("bob", now=T0)
	later = T0 + timedelta(minutes=16)
	await Reaper().sweep(now=later)

	outcome = await service.request_search("alice", now=later)

	assert outcome.status == "searching"


@pytest.mark.asyncio
async def test_run_reaper_logs_and_survives_failures(caplog):
	class BrokenQueue(QueueStore):
		async def due_for_expiry(self, *, now, limit):
			raise RuntimeError("redis exploded")

	summary = await run_reaper(Reaper(queue=BrokenQueue()))

	assert summary is None
	assert "reaper sweep failed" in caplog.text
