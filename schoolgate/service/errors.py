from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class _ReasonedAuthenticationError(AuthenticationError):
    reason: str = "unauthorized"
    default_message: str = "unauthorized"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            message or self.default_message,
            detail={"reason": self.reason, **(detail or {})},
        )


class AccountBlockedError(_ReasonedAuthenticationError):
    """Principal is SUSPENDED or INACTIVE."""
    reason = "account_blocked"
    default_message = "account blocked"


class EmailNotVerifiedError(_ReasonedAuthenticationError):
    """Principal is still PENDING email verification."""
    reason = "email_not_verified"
    default_message = "verify email"


class TokenExpiredError(_ReasonedAuthenticationError):
    reason = "token_expired"
    default_message = "token expired"


class TokenMalformedError(_ReasonedAuthenticationError):
    reason = "token_malformed"
    default_message = "malformed token"


class TokenSignatureError(_ReasonedAuthenticationError):
    reason = "token_signature"
    default_message = "invalid token signature"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AccountBlockedError",
    "EmailNotVerifiedError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenSignatureError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
