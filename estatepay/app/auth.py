"""Bearer token handling for the payments API."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .payments.models import Actor, UserRole

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(days=7)


def create_access_token(
    *,
    user_id: str,
    role: UserRole,
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None,
) -> str:
    if expires_delta is None:
        expires_delta = DEFAULT_TOKEN_TTL
    payload = {
        "sub": user_id,
        "userId": user_id,
        "role": UserRole(role).value,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header value."""

    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenVerifier:
    """Resolves signed access tokens into :class:`Actor` values."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    def verify(self, token: Optional[str]) -> Optional[Actor]:
        if not token:
            return None
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.debug("Rejected access token: %s", exc)
            return None

        user_id = payload.get("userId") or payload.get("sub")
        role = payload.get("role")
        if not user_id or not role:
            return None
        try:
            return Actor(user_id=str(user_id), role=UserRole(role))
        except ValueError:
            logger.warning("Access token for %s carries unknown role %r", user_id, role)
            return None


__all__ = ["TokenVerifier", "create_access_token", "parse_bearer"]
