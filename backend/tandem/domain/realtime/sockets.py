"""Socket.IO namespace carrying matchmaking requests, chat rooms and lifecycle events."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import socketio
from pydantic import ValidationError

from tandem.domain.conversations.exceptions import ChatError
from tandem.domain.conversations.lifecycle import LifecycleEngine, get_lifecycle
from tandem.domain.conversations.messages import MessageLog, preview_of
from tandem.domain.conversations.schemas import SendMessageRequest
from tandem.domain.matching.exceptions import MatchError
from tandem.domain.matching.schemas import SearchResponse, SearchStatusResponse
from tandem.domain.matching.service import MatchService, get_match_service
from tandem.domain.realtime import events
from tandem.infra.auth import AuthenticatedUser, IdentityError, resolve_socket_caller
from tandem.infra.retry import StoreUnavailable
from tandem.obs import logging as obs_logging
from tandem.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_EXPECTED_ERRORS = (MatchError, ChatError, StoreUnavailable)


def _chat_id(payload: Optional[dict]) -> Optional[str]:
	if not isinstance(payload, dict):
		return None
	value = payload.get("chat_id") or payload.get("chatId")
	return str(value) if value else None


class RealtimeNamespace(socketio.AsyncNamespace):
	"""Every connection joins its user room; chat rooms are joined on request."""

	def __init__(
		self,
		*,
		matches: Optional[MatchService] = None,
		lifecycle: Optional[LifecycleEngine] = None,
		messages: Optional[MessageLog] = None,
	) -> None:
		super().__init__(events.NAMESPACE)
		self._sessions: Dict[str, AuthenticatedUser] = {}
		self._matches = matches
		self._lifecycle = lifecycle
		self._messages = messages or MessageLog()

	@property
	def matches(self) -> MatchService:
		return self._matches or get_match_service()

	@property
	def lifecycle(self) -> LifecycleEngine:
		return self._lifecycle or get_lifecycle()

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		scope = environ.get("asgi.scope", environ)
		try:
			user = resolve_socket_caller(scope, auth or environ.get("auth") or scope.get("auth"))
		except IdentityError:
			raise ConnectionRefusedError("unauthorized") from None
		obs_metrics.socket_connected(self.namespace)
		self._sessions[sid] = user
		await self.enter_room(sid, events.user_room(user.id))
		await self.emit("realtime:ack", {"ok": True, "user_id": user.id}, room=sid)

	async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
		user = self._sessions.pop(sid, None)
		if user:
			obs_metrics.socket_disconnected(self.namespace)
			await self.leave_room(sid, events.user_room(user.id))

	async def _session(self, sid: str, error_event: str) -> Optional[AuthenticatedUser]:
		user = self._sessions.get(sid)
		if user is None:
			await self.emit(error_event, {"reason": "unauthenticated"}, room=sid)
		return user

	async def _fail(self, sid: str, error_event: str, exc: Exception) -> None:
		reason = getattr(exc, "reason", "error")
		logger.info("socket request rejected event=%s reason=%s", error_event, reason)
		await self.emit(error_event, {"reason": reason}, room=sid)

	async def on_start_search(self, sid: str, payload: Optional[dict] = None) -> None:
		obs_metrics.socket_event(self.namespace, "start_search")
		user = await self._session(sid, "match-error")
		if user is None:
			return
		tokens = obs_logging.bind_context(user_id=user.id, sid=sid)
		try:
			outcome = await self.matches.request_search(user.id)
		except _EXPECTED_ERRORS as exc:
			await self._fail(sid, "match-error", exc)
			return
		finally:
			obs_logging.reset_context(tokens)
		body = SearchResponse.from_outcome(outcome).model_dump(mode="json")
		if outcome.matched:
			await self.emit(events.MATCH_FOUND, body, room=sid)
		else:
			await self.emit("match-searching", body, room=sid)

	async def on_cancel_search(self, sid: str, payload: Optional[dict] = None) -> None:
		obs_metrics.socket_event(self.namespace, "cancel_search")
		user = await self._session(sid, "match-error")
		if user is None:
			return
		try:
			await self.matches.cancel_search(user.id)
		except _EXPECTED_ERRORS as exc:
			await self._fail(sid, "match-error", exc)
			return
		await self.emit("match-cancelled", {"cancelled": True}, room=sid)

	async def on_search_status(self, sid: str, payload: Optional[dict] = None) -> None:
		obs_metrics.socket_event(self.namespace, "search_status")
		user = await self._session(sid, "match-error")
		if user is None:
			return
		try:
			state = await self.matches.queue_status(user.id)
		except _EXPECTED_ERRORS as exc:
			await self._fail(sid, "match-error", exc)
			return
		await self.emit("match-status", SearchStatusResponse.from_state(state).model_dump(mode="json"), room=sid)

	async def on_join_chat(self, sid: str, payload: Optional[dict] = None) -> None:
		obs_metrics.socket_event(self.namespace, "join_chat")
		user = await self._session(sid, "chat-error")
		chat_id = _chat_id(payload)
		if user is None or chat_id is None:
			return
		try:
			await self.lifecycle.require_participant(chat_id, user.id, live=True)
		except _EXPECTED_ERRORS as exc:
			await self._fail(sid, "chat-error", exc)
			return
		await self.enter_room(sid, events.chat_room(chat_id))
		await self.emit("chat-joined", {"chat_id": chat_id}, room=sid)

	async def on_leave_chat(self, sid: str, payload: Optional[dict] = None) -> None:
		obs_metrics.socket_event(self.namespace, "leave_chat")
		chat_id = _chat_id(payload)
		if chat_id is None or sid not in self._sessions:
			return
		await self.leave_room(sid, events.chat_room(chat_id))

	async def on_send_message(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "send_message")
		user = await self._session(sid, "chat-error")
		if user is None:
			return {"ok": False, "reason": "unauthenticated"}
		try:
			request = SendMessageRequest.model_validate(
				{
					"chat_id": _chat_id(payload) or "",
					"body": (payload or {}).get("body", ""),
					"client_msg_id": (payload or {}).get("client_msg_id") or (payload or {}).get("clientMsgId"),
				}
			)
		except ValidationError:
			await self.emit("chat-error", {"reason": "invalid_payload"}, room=sid)
			return {"ok": False, "reason": "invalid_payload"}
		tokens = obs_logging.bind_context(user_id=user.id, sid=sid, chat_id=request.chat_id)
		try:
			await self.lifecycle.require_participant(request.chat_id, user.id, live=True)
			message = await self._messages.append(
				request.chat_id,
				user.id,
				request.body,
				client_msg_id=request.client_msg_id,
			)
		except _EXPECTED_ERRORS as exc:
			await self._fail(sid, "chat-error", exc)
			return {"ok": False, "reason": getattr(exc, "reason", "error")}
		finally:
			obs_logging.reset_context(tokens)
		await events.emit_new_message(request.chat_id, message.to_dict())
		await self.lifecycle.record_message_activity(
			request.chat_id,
			user.id,
			preview_of(message.body),
			at=message.created_at,
		)
		return {"ok": True, "message_id": message.message_id, "client_msg_id": message.client_msg_id}

	async def on_typing(self, sid: str, payload: Optional[dict] = None) -> None:
		await self._relay_typing(sid, payload, events.TYPING)

	async def on_stop_typing(self, sid: str, payload: Optional[dict] = None) -> None:
		await self._relay_typing(sid, payload, events.STOP_TYPING)

	async def _relay_typing(self, sid: str, payload: Optional[dict], event: str) -> None:
		obs_metrics.socket_event(self.namespace, event)
		user = self._sessions.get(sid)
		chat_id = _chat_id(payload)
		if user is None or chat_id is None:
			return
		if events.chat_room(chat_id) not in self.rooms(sid):
			return
		await events.emit_to_chat(chat_id, event, {"chat_id": chat_id, "user_id": user.id}, skip_sid=sid)
