"""Pydantic schemas for the matchmaking API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from tandem.domain.conversations.schemas import CounterpartSummary

from .models import SearchOutcome, SearchState


class SearchResponse(BaseModel):
	status: str
	chat_id: Optional[str] = None
	counterpart: Optional[CounterpartSummary] = None
	expires_at: Optional[datetime] = None

	@classmethod
	def from_outcome(cls, outcome: SearchOutcome) -> "SearchResponse":
		counterpart = CounterpartSummary(**outcome.counterpart) if outcome.counterpart else None
		return cls(
			status=outcome.status,
			chat_id=outcome.chat_id,
			counterpart=counterpart,
			expires_at=outcome.expires_at,
		)


class SearchStatusResponse(BaseModel):
	searching: bool
	matched: bool
	chat_id: Optional[str] = None
	timed_out: bool = False
	expires_at: Optional[datetime] = None

	@classmethod
	def from_state(cls, state: SearchState) -> "SearchStatusResponse":
		return cls(
			searching=state.searching,
			matched=state.matched,
			chat_id=state.chat_id,
			timed_out=state.timed_out,
			expires_at=state.expires_at,
		)


class CancelSearchResponse(BaseModel):
	cancelled: bool = True
