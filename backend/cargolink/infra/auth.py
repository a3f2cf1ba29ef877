"""Participant identity for FastAPI endpoints and socket connections.

Session management lives in the hosted auth service. Here we only turn an
access token (or, in development, the X-User-Id header) into the participant
the request acts for.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from cargolink.infra import jwt as jwt_helper
from cargolink.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	role: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode an access JWT and return the participant it was issued to.

	`role` is the marketplace role claim (trader or provider).
	"""
	try:
		claims = jwt_helper.decode_access(token)
	except InvalidTokenError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None
	return AuthenticatedUser(id=claims.subject, role=claims.role)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated participant.

	In development we allow the X-User-Id header. In all other environments a
	valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id and x_user_id.strip():
		return AuthenticatedUser(id=x_user_id.strip())
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


def user_from_socket(auth: Optional[dict], headers: dict[str, str]) -> AuthenticatedUser:
	"""Resolve the participant for a Socket.IO connection.

	Accepts `auth.token` / `Authorization: Bearer` everywhere and `auth.userId` /
	`X-User-Id` in development only. Raises ValueError when nothing usable is present.
	"""
	auth = auth or {}
	token = auth.get("token")
	header_value = headers.get("authorization") or ""
	if not token and header_value.lower().startswith("bearer "):
		token = header_value[7:].strip()
	if token:
		try:
			return verify_access_jwt(str(token))
		except HTTPException:
			raise ValueError("invalid_token") from None
	if settings.is_dev():
		user_id = str(auth.get("userId") or headers.get("x-user-id") or "").strip()
		if user_id:
			return AuthenticatedUser(id=user_id)
	raise ValueError("missing_identity")
