"""Domain-level exceptions for conversation lifecycle transitions."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for conversation errors."""

    reason: str = "unknown"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class ChatNotFound(ChatError):
    reason = "chat_not_found"


class NotAParticipant(ChatError):
    reason = "not_a_participant"


class AlreadySaved(ChatError):
    reason = "already_saved"


class InvalidTransition(ChatError):
    reason = "invalid_transition"


class MessageRejected(ChatError):
    reason = "message_rejected"
