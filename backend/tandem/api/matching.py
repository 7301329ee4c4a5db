"""REST surface for starting, cancelling and polling a search."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tandem.api.errors import map_error
from tandem.domain.matching.exceptions import MatchError
from tandem.domain.matching.schemas import CancelSearchResponse, SearchResponse, SearchStatusResponse
from tandem.domain.matching.service import get_match_service
from tandem.infra.auth import AuthenticatedUser, get_current_user
from tandem.infra.retry import StoreUnavailable

router = APIRouter(prefix="/match", tags=["match"])


@router.post("/search", response_model=SearchResponse)
async def start_search(auth_user: AuthenticatedUser = Depends(get_current_user)) -> SearchResponse:
	try:
		outcome = await get_match_service().request_search(auth_user.id)
	except (MatchError, StoreUnavailable) as exc:
		raise map_error(exc) from None
	return SearchResponse.from_outcome(outcome)


@router.delete("/search", response_model=CancelSearchResponse)
async def cancel_search(auth_user: AuthenticatedUser = Depends(get_current_user)) -> CancelSearchResponse:
	try:
		await get_match_service().cancel_search(auth_user.id)
	except (MatchError, StoreUnavailable) as exc:
		raise map_error(exc) from None
	return CancelSearchResponse()


@router.get("/status", response_model=SearchStatusResponse)
async def search_status(auth_user: AuthenticatedUser = Depends(get_current_user)) -> SearchStatusResponse:
	state = await get_match_service().queue_status(auth_user.id)
	return SearchStatusResponse.from_state(state)
