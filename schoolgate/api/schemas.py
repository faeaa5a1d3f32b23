from __future__ import annotations

from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from schoolgate.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class ProfileFields(BaseModel):
    first_name: str
    last_name: str
    middle_name: Optional[str] = None


class RegisterRequest(BaseModel):
    email: str
    password: str
    # TEACHER and ADMIN accounts are provisioned by operators only
    role: Literal["STUDENT", "PARENT"]
    profile: ProfileFields

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_register_email(cls, value: Any) -> Any:
        return _normalize_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_login_email(cls, value: Any) -> Any:
        return _normalize_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class UserStatusUpdateRequest(BaseModel):
    status: Literal["PENDING", "ACTIVE", "SUSPENDED", "INACTIVE"]


class ProfileResponse(BaseModel):
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    avatar: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None
    profile: Optional[ProfileResponse] = None
    role_data: Dict[str, Any] = Field(default_factory=dict)


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LogoutAllResponse(BaseModel):
    tokens_removed: int
