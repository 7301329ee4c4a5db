"""Pydantic schemas for the conversation API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from tandem.domain.directory import ProfileSummary

from .models import ChatLink, Conversation


class CounterpartSummary(BaseModel):
	id: str
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None

	@classmethod
	def from_profile(cls, profile: ProfileSummary) -> "CounterpartSummary":
		return cls(id=profile.id, display_name=profile.display_name, avatar_url=profile.avatar_url)


class ConversationView(BaseModel):
	chat_id: str
	state: str
	kind: str
	participants: List[str]
	saved_by: List[str]
	saved_by_me: bool
	created_by: str
	created_at: datetime
	expires_at: Optional[datetime] = None
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None
	terminated_reason: Optional[str] = None
	counterpart: CounterpartSummary
	server_time: datetime

	@classmethod
	def build(
		cls,
		conversation: Conversation,
		*,
		viewer_id: str,
		counterpart: ProfileSummary,
		now: datetime,
	) -> "ConversationView":
		return cls(
			chat_id=conversation.chat_id,
			state=conversation.state.value,
			kind=conversation.kind.value,
			participants=list(conversation.participants),
			saved_by=sorted(conversation.saved_by),
			saved_by_me=viewer_id in conversation.saved_by,
			created_by=conversation.created_by,
			created_at=conversation.created_at,
			expires_at=conversation.expires_at,
			last_message_at=conversation.last_message_at,
			last_message_preview=conversation.last_message_preview,
			terminated_reason=conversation.terminated_reason,
			counterpart=CounterpartSummary.from_profile(counterpart),
			server_time=now,
		)


class SaveResponse(BaseModel):
	chat_id: str
	saved_by: List[str]
	is_permanent: bool


class TerminateResponse(BaseModel):
	chat_id: str
	terminated: bool
	reason: Optional[str] = None


class DeleteResponse(BaseModel):
	chat_id: str
	deleted: bool = True


class PermanentChatSummary(BaseModel):
	chat_id: str
	counterpart: CounterpartSummary
	created_at: Optional[datetime] = None
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None

	@classmethod
	def from_link(cls, link: ChatLink, counterpart: ProfileSummary) -> "PermanentChatSummary":
		return cls(
			chat_id=link.chat_id,
			counterpart=CounterpartSummary.from_profile(counterpart),
			created_at=link.created_at,
			last_message_at=link.last_message_at,
			last_message_preview=link.last_message_preview,
		)


class PermanentChatList(BaseModel):
	items: List[PermanentChatSummary]
	limit: int
	offset: int


class DirectChatRequest(BaseModel):
	user_id: str = Field(..., min_length=1, description="Known contact to open a chat with")
	group_id: Optional[str] = Field(default=None, description="Restrict the shared-group check to this group")


class DirectChatResponse(BaseModel):
	chat_id: str
	created: bool
	conversation: ConversationView


class SendMessageRequest(BaseModel):
	chat_id: str = Field(..., min_length=1)
	body: str = Field(..., min_length=1)
	client_msg_id: Optional[str] = None


class MessageResponse(BaseModel):
	message_id: str
	chat_id: str
	sender_id: str
	body: str
	client_msg_id: Optional[str] = None
	created_at: datetime
