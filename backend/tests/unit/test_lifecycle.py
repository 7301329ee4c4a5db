import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tandem.domain.conversations.exceptions import (
	AlreadySaved,
	ChatNotFound,
	InvalidTransition,
	NotAParticipant,
)
from tandem.domain.conversations.lifecycle import LifecycleEngine
from tandem.domain.conversations.links import LinkRepository, memory_links
from tandem.domain.conversations.models import EXPIRY_KEY, ChatKind, ChatState, pair_key
from tandem.domain.conversations.reaper import Reaper
from tandem.domain.matching.exceptions import Ineligible
from tandem.domain.matching.service import MatchService
from tandem.domain.matching.store import QueueStore
from tandem.infra.retry import StoreUnavailable

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _paired_chat(first: str = "alice", second: str = "bob") -> str:
	service = MatchService()
	await service.request_search(first, now=T0)
	outcome = await service.request_search(second, now=T0 + timedelta(seconds=1))
	assert outcome.matched
	return outcome.chat_id


@pytest.mark.asyncio
async def test_both_saves_promote_to_permanent_with_links(fanout, fake_redis):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()

	first = await engine.save(chat_id, "alice")

	assert not first.promoted
	assert first.conversation.state is ChatState.PENDING_PROMOTION
	assert first.conversation.saved_by == {"alice"}
	assert await memory_links().get("alice", "bob") is None
	assert fanout.to_user("bob", "chat-saved")[-1] == {
		"chat_id": chat_id,
		"saved_by": ["alice"],
		"is_permanent": False,
	}

	second = await engine.save(chat_id, "bob")

	assert second.promoted
	conversation = second.conversation
	assert conversation.state is ChatState.PERMANENT
	assert conversation.kind is ChatKind.PERMANENT
	assert conversation.saved_by == {"alice", "bob"}
	assert conversation.expires_at is None
	assert (await memory_links().get("alice", "bob")).chat_id == chat_id
	assert (await memory_links().get("bob", "alice")).chat_id == chat_id
	assert await fake_redis.zscore(EXPIRY_KEY, chat_id) is None
	for user_id in ("alice", "bob"):
		assert fanout.to_user(user_id, "chat-saved")[-1]["is_permanent"] is True
		assert await QueueStore().get(user_id) is None


@pytest.mark.asyncio
async def test_saving_twice_is_rejected():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")

	with pytest.raises(AlreadySaved):
		await engine.save(chat_id, "alice")


@pytest.mark.asyncio
async def test_replayed_save_after_promotion_restores_links():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")
	await engine.save(chat_id, "bob")
	memory_links().reset()

	with pytest.raises(AlreadySaved):
		await engine.save(chat_id, "bob")

	assert (await memory_links().get("alice", "bob")).chat_id == chat_id


@pytest.mark.asyncio
async def test_outsider_and_unknown_chat_are_rejected():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()

	with pytest.raises(NotAParticipant):
		await engine.save(chat_id, "eve")
	with pytest.raises(ChatNotFound):
		await engine.save("missing", "alice")


@pytest.mark.asyncio
async def test_leaving_unsaved_chat_notifies_both(fanout):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()

	result = await engine.terminate(chat_id, "alice")

	assert result.terminated
	assert result.conversation.state is ChatState.TERMINATED
	for user_id in ("alice", "bob"):
		payload = fanout.to_user(user_id, "chat-terminated")[-1]
		assert payload["reason"] == "user-left-without-saving"
		assert payload["chat_id"] == chat_id
		assert await QueueStore().get(user_id) is None
	with pytest.raises(InvalidTransition):
		await engine.save(chat_id, "bob")


@pytest.mark.asyncio
async def test_leaving_after_other_saved_sends_distinct_messages(fanout):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")

	result = await engine.terminate(chat_id, "bob")

	assert result.terminated
	assert fanout.to_user("alice", "chat-terminated")[-1]["reason"] == "other-left-without-saving"
	assert fanout.to_user("bob", "chat-terminated")[-1]["reason"] == "you-left-other-saved"


@pytest.mark.asyncio
async def test_saver_cannot_destroy_chat(fanout):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")

	result = await engine.terminate(chat_id, "alice")

	assert not result.terminated
	assert result.conversation.state is ChatState.PENDING_PROMOTION
	assert fanout.named("chat-terminated") == []


@pytest.mark.asyncio
async def test_terminating_permanent_chat_is_invalid():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")
	await engine.save(chat_id, "bob")

	with pytest.raises(InvalidTransition):
		await engine.terminate(chat_id, "alice")


@pytest.mark.asyncio
async def test_delete_permanent_removes_chat_and_links(fanout):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")
	await engine.save(chat_id, "bob")

	await engine.delete(chat_id, "alice")

	assert await engine.store.get(chat_id) is None
	assert await memory_links().get("alice", "bob") is None
	assert await memory_links().get("bob", "alice") is None
	assert fanout.to_user("bob", "chat-terminated")[-1]["reason"] == "deleted"
	assert await engine.store.permanent_chat_id("alice", "bob") is None


@pytest.mark.asyncio
async def test_delete_temporary_chat_is_invalid():
	chat_id = await _paired_chat()

	with pytest.raises(InvalidTransition):
		await LifecycleEngine().delete(chat_id, "alice")


@pytest.mark.asyncio
async def test_overdue_chat_can_still_be_promoted_before_reaper():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	later = T0 + timedelta(minutes=20)

	await engine.save(chat_id, "alice")
	result = await engine.save(chat_id, "bob")
	summary = await Reaper(lifecycle=engine).sweep(now=later)

	assert result.promoted
	assert summary["chats_expired"] == 0
	assert (await engine.store.get(chat_id)).state is ChatState.PERMANENT


@pytest.mark.asyncio
async def test_reaped_chat_cannot_be_revived():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")

	await Reaper(lifecycle=engine).sweep(now=T0 + timedelta(minutes=20))

	with pytest.raises(InvalidTransition):
		await engine.save(chat_id, "bob")


@pytest.mark.asyncio
async def test_direct_chat_requires_shared_group(directory, fanout):
	engine = LifecycleEngine()
	with pytest.raises(Ineligible):
		await engine.start_direct("alice", "bob")

	directory.add_group_member("g-1", "alice")
	directory.add_group_member("g-1", "bob")
	conversation, created = await engine.start_direct("alice", "bob", now=T0)

	assert created
	assert conversation.state is ChatState.PERMANENT
	assert conversation.saved_by == {"alice", "bob"}
	assert (await memory_links().get("bob", "alice")).chat_id == conversation.chat_id
	assert fanout.to_user("bob", "chat-saved")[-1]["is_permanent"] is True

	again, created_again = await engine.start_direct("bob", "alice")
	assert not created_again
	assert again.chat_id == conversation.chat_id


@pytest.mark.asyncio
async def test_direct_chat_respects_blocks_and_group_filter(directory):
	directory.add_group_member("g-1", "alice")
	directory.add_group_member("g-1", "bob")
	engine = LifecycleEngine()

	with pytest.raises(Ineligible) as wrong_group:
		await engine.start_direct("alice", "bob", group_id="g-2")
	assert wrong_group.value.reason == "no_shared_group"

	directory.add_block("bob", "alice")
	with pytest.raises(Ineligible) as blocked:
		await engine.start_direct("alice", "bob")
	assert blocked.value.reason == "blocked"

	with pytest.raises(Ineligible):
		await engine.start_direct("alice", "alice")


@pytest.mark.asyncio
async def test_message_activity_updates_preview_and_links():
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")
	await engine.save(chat_id, "bob")
	sent_at = T0 + timedelta(minutes=3)

	await engine.record_message_activity(chat_id, "alice", "hello there", at=sent_at)

	conversation = await engine.store.get(chat_id)
	assert conversation.last_message_preview == "hello there"
	assert conversation.last_message_at == sent_at
	link = await memory_links().get("bob", "alice")
	assert link.last_message_preview == "hello there"


@pytest.mark.asyncio
async def test_message_activity_failure_is_swallowed(monkeypatch):
	engine = LifecycleEngine()

	async def broken(*args, **kwargs):
		raise RuntimeError("store down")

	monkeypatch.setattr(engine.store, "transition", broken)

	await engine.record_message_activity("chat-x", "alice", "hi")


@pytest.mark.asyncio
async def test_view_includes_counterpart_profile(directory):
	directory.set_profile("bob", display_name="Bob", avatar_url="https://cdn.example/bob.png")
	chat_id = await _paired_chat()

	view = await LifecycleEngine().view(chat_id, "alice", now=T0)

	assert view.counterpart.display_name == "Bob"
	assert view.state == "temporary"
	assert view.saved_by_me is False
	assert view.server_time == T0


@pytest.mark.asyncio
async def test_list_permanent_orders_by_recent_activity():
	engine = LifecycleEngine()
	first = await _paired_chat("alice", "bob")
	await engine.save(first, "alice")
	await engine.save(first, "bob")
	second = await _paired_chat("alice", "carol")
	await engine.save(second, "alice")
	await engine.save(second, "carol")
	await engine.record_message_activity(first, "bob", "newest", at=T0 + timedelta(minutes=5))
	await engine.record_message_activity(second, "carol", "older", at=T0 + timedelta(minutes=2))

	items = await engine.list_permanent("alice")

	assert [item.chat_id for item in items] == [first, second]
	assert items[0].last_message_preview == "newest"
	assert items[0].counterpart.id == "bob"


@pytest.mark.asyncio
async def test_simultaneous_saves_promote_exactly_once(fanout):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()

	results = await asyncio.gather(engine.save(chat_id, "alice"), engine.save(chat_id, "bob"))

	assert sorted(result.promoted for result in results) == [False, True]
	conversation = await engine.store.get(chat_id)
	assert conversation.state is ChatState.PERMANENT
	assert conversation.saved_by == {"alice", "bob"}
	links = LinkRepository()
	assert (await links.get("alice", "bob")).chat_id == chat_id
	assert (await links.get("bob", "alice")).chat_id == chat_id


@pytest.mark.asyncio
async def test_matched_chat_cannot_shadow_direct_chat(directory, fake_redis):
	chat_id = await _paired_chat()
	directory.add_group_member("g-1", "alice")
	directory.add_group_member("g-1", "bob")
	engine = LifecycleEngine()
	direct, created = await engine.start_direct("alice", "bob", now=T0 + timedelta(minutes=1))
	assert created

	await engine.save(chat_id, "alice")
	with pytest.raises(InvalidTransition) as refused:
		await engine.save(chat_id, "bob")

	assert refused.value.reason == "pair_already_permanent"
	temporary = await engine.store.get(chat_id)
	assert temporary.state is ChatState.PENDING_PROMOTION
	assert temporary.saved_by == {"alice"}
	assert await fake_redis.get(pair_key("alice", "bob")) == direct.chat_id
	links = LinkRepository()
	assert (await links.get("alice", "bob")).chat_id == direct.chat_id
	assert (await links.get("bob", "alice")).chat_id == direct.chat_id
	assert [link.chat_id for link in await links.list_for_owner("alice")] == [direct.chat_id]


@pytest.mark.asyncio
async def test_promotion_still_announced_when_links_fail(fanout, monkeypatch):
	chat_id = await _paired_chat()
	engine = LifecycleEngine()
	await engine.save(chat_id, "alice")
	upsert_pair = engine.links.upsert_pair

	async def unavailable(*args, **kwargs):
		raise StoreUnavailable("links.upsert")

	monkeypatch.setattr(engine.links, "upsert_pair", unavailable)

	with pytest.raises(StoreUnavailable):
		await engine.save(chat_id, "bob")

	assert (await engine.store.get(chat_id)).state is ChatState.PERMANENT
	for user_id in ("alice", "bob"):
		assert fanout.to_user(user_id, "chat-saved")[-1]["is_permanent"] is True
		assert await QueueStore().get(user_id) is None

	engine.links.upsert_pair = upsert_pair
	with pytest.raises(AlreadySaved):
		await engine.save(chat_id, "bob")
	assert (await LinkRepository().get("bob", "alice")).chat_id == chat_id
