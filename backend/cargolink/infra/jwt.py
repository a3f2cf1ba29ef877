"""Access tokens issued by the hosted auth service (HS256, shared secret).

Only validation happens in this service; `encode_access` is for local tooling and tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import jwt
from jwt import InvalidTokenError

from cargolink.settings import settings

ISSUER = "cargolink-auth"
AUDIENCE = "cargolink-app"
ALGORITHM = "HS256"
LEEWAY_SECONDS = 5

_REQUIRED_CLAIMS = ("exp", "iat", "iss", "aud", "sub")


@dataclass(frozen=True, slots=True)
class AccessClaims:
	subject: str
	role: Optional[str]
	expires_at: int


def encode_access(claims: Mapping[str, Any], *, ttl_seconds: int = 3600) -> str:
	issued_at = int(time.time())
	body = {"iss": ISSUER, "aud": AUDIENCE, "iat": issued_at, "exp": issued_at + ttl_seconds, **claims}
	return jwt.encode(body, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> AccessClaims:
	"""Verify signature, issuer, audience and expiry.

	Raises `jwt.InvalidTokenError` (or a subclass) when any check fails or the
	subject is blank.
	"""
	payload = jwt.decode(
		token,
		settings.secret_key,
		algorithms=[ALGORITHM],
		audience=AUDIENCE,
		issuer=ISSUER,
		leeway=LEEWAY_SECONDS,
		options={"require": list(_REQUIRED_CLAIMS)},
	)
	subject = str(payload["sub"]).strip()
	if not subject:
		raise InvalidTokenError("blank_subject")
	role = payload.get("role")
	return AccessClaims(subject=subject, role=str(role) if role is not None else None, expires_at=int(payload["exp"]))
