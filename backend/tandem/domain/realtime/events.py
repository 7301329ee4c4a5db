"""Best-effort fan-out to user channels and conversation channels."""

from __future__ import annotations

import logging
from typing import Optional

from tandem.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

NAMESPACE = "/realtime"

MATCH_FOUND = "match-found"
SEARCH_TIMEOUT = "search-timeout"
CHAT_SAVED = "chat-saved"
CHAT_TERMINATED = "chat-terminated"
NEW_MESSAGE = "new-message"
TYPING = "typing"
STOP_TYPING = "stop-typing"

_namespace = None


def user_room(user_id: str) -> str:
	return f"user:{user_id}"


def chat_room(chat_id: str) -> str:
	return f"chat:{chat_id}"


def set_namespace(namespace) -> None:
	global _namespace
	_namespace = namespace


def get_namespace():
	return _namespace


async def _emit(event: str, payload: dict, *, room: str, skip_sid: Optional[str] = None) -> None:
	if _namespace is None:
		return
	try:
		await _namespace.emit(event, payload, room=room, skip_sid=skip_sid)
	except Exception:
		logger.warning("fanout emit failed event=%s room=%s", event, room, exc_info=True)
		obs_metrics.fanout_failure(event)
		return
	obs_metrics.socket_event(_namespace.namespace, event)


async def emit_to_user(user_id: str, event: str, payload: dict) -> None:
	"""Deliver to every live connection of ``user_id``; dropped when none exist."""
	await _emit(event, payload, room=user_room(user_id))


async def emit_to_chat(chat_id: str, event: str, payload: dict, *, skip_sid: Optional[str] = None) -> None:
	await _emit(event, payload, room=chat_room(chat_id), skip_sid=skip_sid)


async def emit_match_found(user_id: str, payload: dict) -> None:
	await emit_to_user(user_id, MATCH_FOUND, payload)


async def emit_search_timeout(user_id: str, payload: dict) -> None:
	await emit_to_user(user_id, SEARCH_TIMEOUT, payload)


async def emit_chat_saved(user_id: str, payload: dict) -> None:
	await emit_to_user(user_id, CHAT_SAVED, payload)


async def emit_chat_terminated(user_id: str, payload: dict) -> None:
	await emit_to_user(user_id, CHAT_TERMINATED, payload)


async def emit_new_message(chat_id: str, payload: dict) -> None:
	await emit_to_chat(chat_id, NEW_MESSAGE, payload)
