"""REST surface for the conversation lifecycle."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from tandem.api.errors import map_error
from tandem.domain.conversations.exceptions import ChatError
from tandem.domain.conversations.lifecycle import get_lifecycle
from tandem.domain.conversations.messages import MessageLog
from tandem.domain.conversations.schemas import (
	ConversationView,
	DeleteResponse,
	DirectChatRequest,
	DirectChatResponse,
	MessageResponse,
	PermanentChatList,
	SaveResponse,
	TerminateResponse,
)
from tandem.domain.matching.exceptions import MatchError
from tandem.infra.auth import AuthenticatedUser, get_current_user
from tandem.infra.retry import StoreUnavailable

router = APIRouter(prefix="/chats", tags=["chats"])

_DOMAIN_ERRORS = (ChatError, MatchError, StoreUnavailable)
_messages = MessageLog()


@router.get("", response_model=PermanentChatList)
async def list_chats(
	limit: int = Query(default=50, ge=1, le=200),
	offset: int = Query(default=0, ge=0),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> PermanentChatList:
	items = await get_lifecycle().list_permanent(auth_user.id, limit=limit, offset=offset)
	return PermanentChatList(items=items, limit=limit, offset=offset)


@router.post("/direct", response_model=DirectChatResponse)
async def start_direct_chat(
	payload: DirectChatRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> DirectChatResponse:
	lifecycle = get_lifecycle()
	try:
		conversation, created = await lifecycle.start_direct(auth_user.id, payload.user_id, group_id=payload.group_id)
		view = await lifecycle.view(conversation.chat_id, auth_user.id)
	except _DOMAIN_ERRORS as exc:
		raise map_error(exc) from None
	return DirectChatResponse(chat_id=conversation.chat_id, created=created, conversation=view)


@router.get("/{chat_id}", response_model=ConversationView)
async def get_chat(chat_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> ConversationView:
	try:
		return await get_lifecycle().view(chat_id, auth_user.id)
	except _DOMAIN_ERRORS as exc:
		raise map_error(exc) from None


@router.post("/{chat_id}/save", response_model=SaveResponse)
async def save_chat(chat_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> SaveResponse:
	try:
		result = await get_lifecycle().save(chat_id, auth_user.id)
	except _DOMAIN_ERRORS as exc:
		raise map_error(exc) from None
	return SaveResponse(
		chat_id=chat_id,
		saved_by=sorted(result.conversation.saved_by),
		is_permanent=result.promoted,
	)


@router.post("/{chat_id}/terminate", response_model=TerminateResponse)
async def terminate_chat(chat_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> TerminateResponse:
	try:
		result = await get_lifecycle().terminate(chat_id, auth_user.id)
	except _DOMAIN_ERRORS as exc:
		raise map_error(exc) from None
	return TerminateResponse(
		chat_id=chat_id,
		terminated=result.terminated,
		reason=result.conversation.terminated_reason if result.terminated else None,
	)


@router.delete("/{chat_id}", response_model=DeleteResponse)
async def delete_chat(chat_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> DeleteResponse:
	try:
		await get_lifecycle().delete(chat_id, auth_user.id)
	except _DOMAIN_ERRORS as exc:
		raise map_error(exc) from None
	return DeleteResponse(chat_id=chat_id)


@router.get("/{chat_id}/messages", response_model=list[MessageResponse])
async def list_messages(
	chat_id: str,
	limit: int = Query(default=50, ge=1, le=200),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> list[MessageResponse]:
	try:
		await get_lifecycle().require_participant(chat_id, auth_user.id)
		messages = await _messages.history(chat_id, limit=limit)
	except _DOMAIN_ERRORS as exc:
		raise map_error(exc) from None
	return [MessageResponse(**message.to_dict()) for message in messages]
