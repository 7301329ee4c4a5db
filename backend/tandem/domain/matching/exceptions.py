"""Domain-level exceptions for the matchmaking queue."""

from __future__ import annotations


class MatchError(Exception):
    """Base class for matchmaking errors."""

    reason: str = "unknown"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class AlreadySearching(MatchError):
    reason = "already_searching"


class NoActiveSearch(MatchError):
    reason = "no_active_search"


class Ineligible(MatchError):
    """Caller is banned, or the requested pair is blocked."""

    reason = "ineligible"

