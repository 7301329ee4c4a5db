"""Caller identity resolution for HTTP endpoints and socket connections.

- Bearer JWTs (HS256, settings.secret_key) are the only accepted credential outside dev.
- In development the X-User-Id header is honoured so local tools can impersonate users.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from tandem.infra import jwt as jwt_helper
from tandem.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	handle: Optional[str] = None
	display_name: Optional[str] = None
	roles: Tuple[str, ...] = ()
	session_id: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role in self.roles


class IdentityError(Exception):
	"""Raised when a caller cannot be resolved to a user."""

	reason = "invalid_token"


_bearer_scheme = HTTPBearer(auto_error=False)


def _roles_from_claim(claim: object) -> Tuple[str, ...]:
	if isinstance(claim, (list, tuple)):
		return tuple(str(r).strip() for r in claim if str(r).strip())
	if isinstance(claim, str):
		return tuple(part.strip() for part in claim.split(",") if part.strip())
	return ()


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode an access JWT and return the user it names."""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError as exc:
		raise IdentityError() from exc
	display_name = payload.get("name") or payload.get("display_name")
	handle = payload.get("handle")
	session_id = payload.get("sid")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		handle=str(handle) if handle is not None else None,
		display_name=str(display_name) if display_name is not None else None,
		roles=_roles_from_claim(payload.get("roles") or payload.get("role")),
		session_id=str(session_id) if session_id is not None else None,
	)


def resolve_caller(
	*,
	bearer: Optional[str] = None,
	dev_user_id: Optional[str] = None,
) -> AuthenticatedUser:
	"""Resolve a connection or request to a stable user identity."""
	if bearer:
		return verify_access_jwt(bearer)
	if settings.is_dev() and dev_user_id and dev_user_id.strip():
		return AuthenticatedUser(id=dev_user_id.strip())
	raise IdentityError()


def resolve_socket_caller(scope: Mapping, auth: Optional[Mapping] = None) -> AuthenticatedUser:
	"""Socket.IO flavour of :func:`resolve_caller`.

	Clients pass ``auth={"token": ...}`` (or ``{"userId": ...}`` in dev); headers are
	checked as a fallback for transports that cannot set an auth payload.
	"""
	auth = auth or {}
	token = auth.get("token")
	if not token:
		header = _header(scope, "authorization")
		if header and header.lower().startswith("bearer "):
			token = header[7:].strip()
	dev_user_id = auth.get("userId") or _header(scope, "x-user-id")
	return resolve_caller(bearer=token or None, dev_user_id=dev_user_id)


def _header(scope: Mapping, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""FastAPI dependency resolving the authenticated caller."""
	bearer = None
	if credentials and credentials.scheme.lower() == "bearer":
		bearer = credentials.credentials
	try:
		return resolve_caller(bearer=bearer, dev_user_id=x_user_id)
	except IdentityError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None


async def require_ops_access(
	x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
	"""Gate ops endpoints on the shared admin token or a bearer JWT with the ``admin`` role."""
	configured = settings.obs_admin_token
	if configured and x_admin_token and hmac.compare_digest(x_admin_token, configured):
		return
	if credentials and credentials.scheme.lower() == "bearer":
		if configured and hmac.compare_digest(credentials.credentials, configured):
			return
		try:
			user = verify_access_jwt(credentials.credentials)
		except IdentityError:
			user = None
		if user is not None and user.has_role("admin"):
			return
	raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


async def require_metrics_access(
	x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
	if settings.obs_metrics_public:
		return
	await require_ops_access(x_admin_token=x_admin_token, credentials=credentials)
