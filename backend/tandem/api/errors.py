"""Domain error mapping and global handlers that stamp every error body with the request id."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tandem.domain.conversations.exceptions import (
    AlreadySaved,
    ChatError,
    ChatNotFound,
    InvalidTransition,
    MessageRejected,
    NotAParticipant,
)
from tandem.domain.matching.exceptions import AlreadySearching, Ineligible, MatchError, NoActiveSearch
from tandem.infra.retry import StoreUnavailable
from tandem.obs.middleware import REQUEST_ID_HEADER

_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (AlreadySearching, status.HTTP_409_CONFLICT),
    (AlreadySaved, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (NoActiveSearch, status.HTTP_404_NOT_FOUND),
    (ChatNotFound, status.HTTP_404_NOT_FOUND),
    (NotAParticipant, status.HTTP_403_FORBIDDEN),
    (Ineligible, status.HTTP_403_FORBIDDEN),
    (MessageRejected, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def map_error(exc: Exception) -> HTTPException:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(code, detail=getattr(exc, "reason", "error"))
    return HTTPException(status.HTTP_400_BAD_REQUEST, detail=getattr(exc, "reason", str(exc)))


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        payload = {"detail": exc.detail, "request_id": get_request_id(request)}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = {
            "detail": "validation_error",
            "errors": jsonable_errors(exc),
            "request_id": get_request_id(request),
        }
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload)

    @app.exception_handler(MatchError)
    @app.exception_handler(ChatError)
    @app.exception_handler(StoreUnavailable)
    async def domain_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
        mapped = map_error(exc)
        payload = {"detail": mapped.detail, "request_id": get_request_id(request)}
        return JSONResponse(status_code=mapped.status_code, content=payload)


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
