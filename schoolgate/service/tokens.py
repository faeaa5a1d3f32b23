"""Signed access/refresh tokens.

Both token kinds carry the same claim shape (subject id, email, role) but are
signed with different secrets and tagged with a ``type`` claim, so neither can
stand in for the other.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict

import jwt

from schoolgate.config import Settings
from schoolgate.durations import parse_duration, try_parse_duration, utcnow
from schoolgate.logging import get_logger
from schoolgate.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)
from schoolgate.storage.models import Role, User

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ["sub", "email", "role", "iat", "exp", "jti", "type"]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class AccessTokenClaims:
    subject_id: str
    email: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    kind: TokenKind = TokenKind.ACCESS
    token_id: str = ""

    @classmethod
    def for_user(cls, user: User, kind: TokenKind, ttl: timedelta) -> "AccessTokenClaims":
        # JWT timestamps have second precision
        now = utcnow().replace(microsecond=0)
        return cls(
            subject_id=user.id,
            email=user.email,
            role=Role(user.role),
            issued_at=now,
            expires_at=now + ttl,
            kind=kind,
            token_id=str(uuid.uuid4()),
        )

    def to_payload(self, issuer: str) -> Dict[str, Any]:
        return {
            "iss": issuer,
            "sub": self.subject_id,
            "email": self.email,
            "role": self.role.value,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "jti": self.token_id or str(uuid.uuid4()),
            "type": self.kind.value,
        }


def encode_token(
    claims: AccessTokenClaims,
    secret: str,
    *,
    issuer: str = "schoolgate",
    algorithm: str = "HS256",
) -> str:
    return jwt.encode(claims.to_payload(issuer), secret, algorithm=algorithm)


def decode_token(
    token: Any,
    secret: str,
    *,
    issuer: str = "schoolgate",
    algorithm: str = "HS256",
) -> AccessTokenClaims:
    """Verify a token's signature and expiry and return its claims.

    Raises TokenExpiredError, TokenSignatureError or TokenMalformedError.
    """
    if not isinstance(token, str) or not token:
        raise TokenMalformedError()
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            issuer=issuer,
            options={"require": _REQUIRED_CLAIMS},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError() from exc
    except jwt.InvalidSignatureError as exc:
        raise TokenSignatureError() from exc
    except jwt.InvalidTokenError as exc:
        raise TokenMalformedError() from exc
    try:
        return AccessTokenClaims(
            subject_id=str(payload["sub"]),
            email=str(payload["email"]),
            role=Role(payload["role"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            kind=TokenKind(payload["type"]),
            token_id=str(payload["jti"]),
        )
    except (TypeError, ValueError) as exc:
        raise TokenMalformedError() from exc


class TokenIssuer:
    """Issues and verifies token pairs using per-kind secrets and lifetimes."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl: str = "15m",
        refresh_ttl: str = "7d",
        issuer: str = "schoolgate",
        algorithm: str = "HS256",
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        access_delta = try_parse_duration(access_ttl)
        if access_delta is None:
            raise ValueError(f"invalid access token lifetime: {access_ttl!r}")
        self._secrets = {TokenKind.ACCESS: access_secret, TokenKind.REFRESH: refresh_secret}
        self._ttls = {
            TokenKind.ACCESS: access_delta,
            TokenKind.REFRESH: parse_duration(refresh_ttl, setting="jwt_refresh_expires_in"),
        }
        self.issuer = issuer
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=settings.jwt_access_expires_in,
            refresh_ttl=settings.jwt_refresh_expires_in,
            issuer=settings.jwt_issuer,
            algorithm=settings.jwt_algorithm,
        )

    def ttl(self, kind: TokenKind) -> timedelta:
        return self._ttls[kind]

    def issue(self, user: User, kind: TokenKind) -> str:
        claims = AccessTokenClaims.for_user(user, kind, self.ttl(kind))
        return encode_token(
            claims, self._secrets[kind], issuer=self.issuer, algorithm=self.algorithm
        )

    def issue_pair(self, user: User) -> Dict[str, str]:
        return {
            "access_token": self.issue(user, TokenKind.ACCESS),
            "refresh_token": self.issue(user, TokenKind.REFRESH),
        }

    def verify(self, token: Any, kind: TokenKind) -> AccessTokenClaims:
        claims = decode_token(
            token, self._secrets[kind], issuer=self.issuer, algorithm=self.algorithm
        )
        if claims.kind is not kind:
            logger.warning("token_kind_mismatch", expected=kind.value, got=claims.kind.value)
            raise TokenMalformedError("wrong token type")
        return claims
