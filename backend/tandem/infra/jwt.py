"""HS256 bearer tokens naming the caller in ``sub``."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

import jwt
from jwt import InvalidTokenError

from tandem.settings import settings

ISSUER = "tandem-api"
AUDIENCE = "tandem-clients"
_ALGORITHM = "HS256"
_REQUIRED = ["exp", "iat", "iss", "aud", "sub"]


def issue_access(
    user_id: str,
    *,
    roles: Iterable[str] = (),
    ttl_seconds: int = 3600,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    """Mint a token for ``user_id``; used by the auth service and by tests."""
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = dict(extra or {})
    claims.update(
        {
            "sub": str(user_id),
            "iss": ISSUER,
            "aud": AUDIENCE,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
        }
    )
    role_list = [str(role) for role in roles]
    if role_list:
        claims["roles"] = role_list
    return jwt.encode(claims, settings.secret_key, algorithm=_ALGORITHM)


def decode_access(token: str) -> dict[str, Any]:
    """Return the claims; raises ``InvalidTokenError`` on a bad signature, audience or expiry."""
    claims = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[_ALGORITHM],
        audience=AUDIENCE,
        issuer=ISSUER,
        leeway=5,
        options={"require": _REQUIRED},
    )
    if not str(claims.get("sub") or "").strip():
        raise InvalidTokenError("missing_claim:sub")
    return claims
