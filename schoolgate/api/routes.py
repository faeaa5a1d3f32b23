from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from schoolgate.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
    UserStatusUpdateRequest,
)
from schoolgate.config import get_settings
from schoolgate.logging import get_logger
from schoolgate.service.auth import AuthContext, AuthResult, ProfileInput
from schoolgate.service.runtime import get_runtime
from schoolgate.service.sessions import RequestMetadata
from schoolgate.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _request_metadata(request: Request) -> RequestMetadata:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return RequestMetadata(
        user_agent=request.headers.get("User-Agent"),
        ip_address=ip_address,
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse(**result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
        ),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    runtime = get_runtime()
    runtime.access.require_role(principal, Role.ADMIN)
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Self-register a STUDENT or PARENT account.

    The account starts PENDING; the returned tokens become usable once the
    account is activated.
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        profile=ProfileInput(
            first_name=body.profile.first_name,
            last_name=body.profile.last_name,
            middle_name=body.profile.middle_name,
        ),
        public_role=body.role,
        metadata=_request_metadata(request),
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        metadata=_request_metadata(request),
    )
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Exchange a refresh token for a new pair; the presented token is spent."""
    runtime = get_runtime()
    result = await runtime.auth.refresh_tokens(
        body.refresh_token, metadata=_request_metadata(request)
    )
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, metadata=_request_metadata(request))
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    removed = await runtime.auth.logout_all(
        principal.user_id, metadata=_request_metadata(request)
    )
    return Envelope(status="ok", data=LogoutAllResponse(tokens_removed=removed))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    view = await runtime.auth.get_user(principal, principal.user_id)
    return Envelope(status="ok", data=UserResponse(**view))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    """Read another principal; allowed for self, admins, parents of the
    principal and the home-room teacher of the principal's class."""
    runtime = get_runtime()
    view = await runtime.auth.get_user(principal, user_id)
    return Envelope(status="ok", data=UserResponse(**view))


@router.post("/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    removed = await runtime.auth.change_password(
        principal,
        body.current_password,
        body.new_password,
        metadata=_request_metadata(request),
    )
    return Envelope(
        status="ok",
        data={"message": "password changed", "tokens_removed": removed},
    )


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: UserStatusUpdateRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    view = await runtime.auth.set_user_status(
        principal, user_id, body.status, metadata=_request_metadata(request)
    )
    return Envelope(status="ok", data=UserResponse(**view))


@router.post("/admin/users/{user_id}/logout-all", response_model=Envelope, tags=["admin"])
async def admin_force_logout(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    removed = await runtime.auth.force_logout(
        principal, user_id, metadata=_request_metadata(request)
    )
    return Envelope(status="ok", data=LogoutAllResponse(tokens_removed=removed))
