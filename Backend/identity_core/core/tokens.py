"""
Signed bearer tokens.

Two kinds of token are issued:
- full session tokens (24h, or 30 days with keep-logged-in)
- partial tokens marked twofa_pending, valid for five minutes and accepted
  only by the 2FA endpoints
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from identity_core.core.config import settings
from identity_core.core.exceptions import NotAuthenticatedError
from identity_core.models.user import Role, User


UTC = timezone.utc


@dataclass(frozen=True)
class TokenClaims:
    """Decoded claims of a bearer token."""

    user_id: uuid.UUID
    email: str
    role: Role
    company_id: Optional[uuid.UUID]
    park_id: Optional[uuid.UUID]
    twofa_pending: bool = False
    twofa_setup_required: bool = False
    keep_logged_in: bool = False


class TokenIssuer:
    """Produces and validates HMAC-signed JWTs."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._secret_key = secret_key or settings.security.secret_key
        self._algorithm = algorithm or settings.token.algorithm
        self._issuer = settings.token.issuer
        self._clock = clock

    def _encode(self, user: User, ttl_seconds: int, **extra) -> str:
        now = self._clock()
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "company_id": str(user.company_id) if user.company_id else None,
            "park_id": str(user.park_id) if user.park_id else None,
            "iss": self._issuer,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
            **extra,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def issue_full(self, user: User, keep_logged_in: bool = False) -> str:
        """Issue a full session token."""
        ttl = settings.token.remember_ttl if keep_logged_in else settings.token.ttl
        return self._encode(user, ttl, keep_logged_in=keep_logged_in)

    def issue_partial(
        self,
        user: User,
        setup_required: bool = False,
        keep_logged_in: bool = False,
    ) -> str:
        """Issue a short-lived token that only unlocks the 2FA endpoints."""
        extra = {"twofa_pending": True, "keep_logged_in": keep_logged_in}
        if setup_required:
            extra["twofa_setup_required"] = True
        return self._encode(user, settings.token.partial_ttl, **extra)

    def decode(self, token: str) -> TokenClaims:
        """
        Validate a token and return its claims.

        Raises:
            NotAuthenticatedError: If the token is malformed, forged or expired
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["sub", "exp", "iat"]},
            )
            return TokenClaims(
                user_id=uuid.UUID(payload["sub"]),
                email=payload.get("email", ""),
                role=Role(payload.get("role", Role.USER.value)),
                company_id=uuid.UUID(payload["company_id"]) if payload.get("company_id") else None,
                park_id=uuid.UUID(payload["park_id"]) if payload.get("park_id") else None,
                twofa_pending=bool(payload.get("twofa_pending", False)),
                twofa_setup_required=bool(payload.get("twofa_setup_required", False)),
                keep_logged_in=bool(payload.get("keep_logged_in", False)),
            )
        except jwt.ExpiredSignatureError:
            raise NotAuthenticatedError("Token has expired")
        except (jwt.PyJWTError, ValueError, KeyError):
            raise NotAuthenticatedError("Invalid token")
