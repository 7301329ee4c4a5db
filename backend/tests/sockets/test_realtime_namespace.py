from unittest.mock import AsyncMock, MagicMock

import pytest
import socketio

from tandem.domain.realtime import events
from tandem.domain.realtime.sockets import RealtimeNamespace


def _environ(user_id: str | None = None) -> dict:
	headers = [(b"x-user-id", user_id.encode())] if user_id else []
	return {"asgi.scope": {"headers": headers}}


def _namespace() -> RealtimeNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = RealtimeNamespace()
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.enter_room = AsyncMock()
	namespace.leave_room = AsyncMock()
	namespace.rooms = MagicMock(return_value=[])
	return namespace


def _emitted(namespace: RealtimeNamespace, event: str, sid: str) -> list[dict]:
	return [
		call.args[1]
		for call in namespace.emit.await_args_list
		if call.args[0] == event and call.kwargs.get("room") == sid
	]


def _entered_rooms(namespace: RealtimeNamespace, sid: str) -> list[str]:
	return [call.args[1] for call in namespace.enter_room.await_args_list if call.args[0] == sid]


async def _paired(namespace: RealtimeNamespace) -> str:
	await namespace.trigger_event("connect", "sid-a", _environ("alice"))
	await namespace.trigger_event("connect", "sid-b", _environ("bob"))
	await namespace.trigger_event("start_search", "sid-a")
	await namespace.trigger_event("start_search", "sid-b")
	found = _emitted(namespace, events.MATCH_FOUND, "sid-b")
	assert found
	return found[0]["chat_id"]


@pytest.mark.asyncio
async def test_connect_without_identity_is_refused():
	namespace = _namespace()

	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", _environ())


@pytest.mark.asyncio
async def test_connect_joins_user_room_and_acks():
	namespace = _namespace()

	await namespace.trigger_event("connect", "sid-1", _environ("alice"))

	namespace.enter_room.assert_awaited_once_with("sid-1", events.user_room("alice"))
	assert _emitted(namespace, "realtime:ack", "sid-1") == [{"ok": True, "user_id": "alice"}]


@pytest.mark.asyncio
async def test_start_search_reports_searching_then_match(fanout):
	namespace = _namespace()

	chat_id = await _paired(namespace)

	assert _emitted(namespace, "match-searching", "sid-a")[0]["status"] == "searching"
	announced = fanout.to_user("alice", events.MATCH_FOUND)
	assert announced and announced[0]["chat_id"] == chat_id


@pytest.mark.asyncio
async def test_second_start_search_is_rejected():
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-a", _environ("alice"))

	await namespace.trigger_event("start_search", "sid-a")
	await namespace.trigger_event("start_search", "sid-a")

	assert _emitted(namespace, "match-error", "sid-a") == [{"reason": "already_searching"}]


@pytest.mark.asyncio
async def test_cancel_without_search_reports_error():
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-a", _environ("alice"))

	await namespace.trigger_event("cancel_search", "sid-a")
	await namespace.trigger_event("start_search", "sid-a")
	await namespace.trigger_event("cancel_search", "sid-a")

	assert _emitted(namespace, "match-error", "sid-a") == [{"reason": "no_active_search"}]
	assert _emitted(namespace, "match-cancelled", "sid-a") == [{"cancelled": True}]


@pytest.mark.asyncio
async def test_outsider_cannot_join_or_post(fanout):
	namespace = _namespace()
	chat_id = await _paired(namespace)
	await namespace.trigger_event("connect", "sid-c", _environ("carol"))

	await namespace.trigger_event("join_chat", "sid-c", {"chat_id": chat_id})
	ack = await namespace.trigger_event("send_message", "sid-c", {"chat_id": chat_id, "body": "hi"})

	assert ack["ok"] is False
	assert _emitted(namespace, "chat-error", "sid-c")
	assert _entered_rooms(namespace, "sid-c") == [events.user_room("carol")]
	assert fanout.named(events.NEW_MESSAGE) == []


@pytest.mark.asyncio
async def test_participant_message_fans_out_to_chat_room(fanout):
	namespace = _namespace()
	chat_id = await _paired(namespace)

	await namespace.trigger_event("join_chat", "sid-a", {"chat_id": chat_id})
	ack = await namespace.trigger_event(
		"send_message",
		"sid-a",
		{"chat_id": chat_id, "body": "hello", "client_msg_id": "c-1"},
	)

	assert ack["ok"] is True
	assert ack["client_msg_id"] == "c-1"
	assert _emitted(namespace, "chat-joined", "sid-a") == [{"chat_id": chat_id}]
	[(payload, room)] = fanout.named(events.NEW_MESSAGE)
	assert room == events.chat_room(chat_id)
	assert payload["body"] == "hello"
	assert payload["sender_id"] == "alice"


@pytest.mark.asyncio
async def test_typing_is_relayed_only_from_joined_sockets(fanout):
	namespace = _namespace()
	chat_id = await _paired(namespace)

	await namespace.trigger_event("typing", "sid-a", {"chat_id": chat_id})
	assert fanout.named(events.TYPING) == []

	namespace.rooms.return_value = [events.chat_room(chat_id)]
	await namespace.trigger_event("typing", "sid-a", {"chat_id": chat_id})
	await namespace.trigger_event("stop_typing", "sid-a", {"chat_id": chat_id})

	assert fanout.named(events.TYPING) == [({"chat_id": chat_id, "user_id": "alice"}, events.chat_room(chat_id))]
	assert len(fanout.named(events.STOP_TYPING)) == 1
