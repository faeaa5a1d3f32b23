from __future__ import annotations

import secrets
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from schoolgate.config import Settings
from schoolgate.durations import utcnow
from schoolgate.logging import get_logger
from schoolgate.service.access import AccessControlEvaluator
from schoolgate.service.account_state import (
    ensure_can_authenticate,
    ensure_can_change_status,
)
from schoolgate.service.activity import ActivityRecorder
from schoolgate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from schoolgate.service.passwords import PasswordHasherService, is_encodable
from schoolgate.service.sessions import RequestMetadata, SessionStore
from schoolgate.service.tokens import TokenIssuer, TokenKind
from schoolgate.storage.errors import ConstraintViolation
from schoolgate.storage.models import (
    PUBLIC_ROLES,
    ActivityLogEntry,
    Admin,
    NotificationSettings,
    Parent,
    Profile,
    Role,
    RoleRecord,
    Session,
    Student,
    Teacher,
    User,
    UserStatus,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
INVALID_REFRESH_TOKEN = "invalid refresh token"


class AuthStore(Protocol):
    def transaction(self) -> AbstractContextManager[Any]: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        role: Role,
        *,
        status: UserStatus = UserStatus.PENDING,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_profile(
        self,
        user_id: str,
        first_name: str,
        last_name: str,
        middle_name: Optional[str] = None,
    ) -> Profile: ...

    def get_profile(self, user_id: str) -> Optional[Profile]: ...

    def create_role_record(self, role: Role, user_id: str) -> RoleRecord: ...

    def get_role_record(self, user_id: str) -> Optional[RoleRecord]: ...

    def create_notification_settings(self, user_id: str) -> NotificationSettings: ...

    def list_child_user_ids(self, parent_user_id: str) -> List[str]: ...

    def list_home_class_student_user_ids(self, teacher_user_id: str) -> List[str]: ...

    def get_refresh_token(self, token: str) -> Optional[Session]: ...

    def delete_refresh_token(self, session_id: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry: ...


@dataclass
class ProfileInput:
    first_name: str
    last_name: str
    middle_name: Optional[str] = None


@dataclass
class AuthContext:
    """The authenticated principal of one request; passed explicitly."""

    user_id: str
    role: Role
    email: str
    token_id: Optional[str] = None


@dataclass
class AuthResult:
    user: Dict[str, Any]
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    session_id: Optional[str] = field(default=None, repr=False)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AuthService:
    """Registration, login, token rotation and revocation for all roles."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasherService] = None,
        tokens: Optional[TokenIssuer] = None,
        sessions: Optional[SessionStore] = None,
        access: Optional[AccessControlEvaluator] = None,
        activity: Optional[ActivityRecorder] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher or PasswordHasherService.from_settings(settings)
        self.tokens = tokens or TokenIssuer.from_settings(settings)
        self.sessions = sessions or SessionStore(
            store, max_sessions=settings.max_sessions_per_user
        )
        self.access = access or AccessControlEvaluator(store)
        self.activity = activity or ActivityRecorder(store)
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    # views
    def _role_data(self, user: User, record: Optional[RoleRecord]) -> Dict[str, Any]:
        match record:
            case Student():
                return {"student_id": record.id, "class_id": record.class_id}
            case Parent():
                return {
                    "parent_id": record.id,
                    "child_user_ids": self.store.list_child_user_ids(user.id),
                }
            case Teacher():
                return {
                    "teacher_id": record.id,
                    "student_user_ids": self.store.list_home_class_student_user_ids(user.id),
                }
            case Admin():
                return {"admin_id": record.id}
        return {}

    def public_view(self, user: User) -> Dict[str, Any]:
        """User shape safe to return to clients; never includes the hash."""
        profile = self.store.get_profile(user.id)
        record = self.store.get_role_record(user.id)
        return {
            "id": user.id,
            "email": user.email,
            "role": Role(user.role).value,
            "status": UserStatus(user.status).value,
            "last_login_at": _iso(user.last_login_at),
            "created_at": _iso(user.created_at),
            "profile": (
                {
                    "first_name": profile.first_name,
                    "last_name": profile.last_name,
                    "middle_name": profile.middle_name,
                    "avatar": profile.avatar,
                }
                if profile
                else None
            ),
            "role_data": self._role_data(user, record),
        }

    def _start_session(self, user: User, metadata: Optional[RequestMetadata]) -> AuthResult:
        pair = self.tokens.issue_pair(user)
        session = self.sessions.create(
            user.id,
            pair["refresh_token"],
            self.tokens.ttl(TokenKind.REFRESH),
            metadata,
        )
        return AuthResult(
            user=self.public_view(user),
            access_token=pair["access_token"],
            refresh_token=pair["refresh_token"],
            session_id=session.id,
        )

    async def _dummy_verify(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await self.hasher.hash_async(secrets.token_urlsafe(16))
        await self.hasher.verify_async(self._dummy_hash, password)

    async def _create_principal(
        self,
        email: str,
        password: str,
        profile: ProfileInput,
        role: Role,
        status: UserStatus,
    ) -> User:
        """Create user, profile, role record and notification settings atomically."""
        if not is_encodable(password):
            raise ValidationError("password contains invalid characters", detail={"field": "password"})
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})

        password_hash = await self.hasher.hash_async(password)
        try:
            with self.store.transaction():
                user = self.store.create_user(normalized, password_hash, role, status=status)
                self.store.create_profile(
                    user.id,
                    profile.first_name,
                    profile.last_name,
                    profile.middle_name,
                )
                self.store.create_role_record(role, user.id)
                self.store.create_notification_settings(user.id)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("email already registered", detail={"field": "email"}) from exc
            raise
        return user

    async def provision_user(
        self,
        email: str,
        password: str,
        profile: ProfileInput,
        role: Role | str,
        *,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        """Create a principal of any role; for operator tooling, not public signup."""
        if not email or not password or profile is None:
            raise ValidationError("email, password and profile are required")
        try:
            role = Role(role)
        except ValueError as exc:
            raise ValidationError("invalid role", detail={"field": "role"}) from exc
        user = await self._create_principal(email, password, profile, role, UserStatus(status))
        self.logger.info("user_provisioned", user_id=user.id, role=role.value)
        return user

    # public operations
    async def register(
        self,
        email: str,
        password: str,
        profile: ProfileInput,
        public_role: Role | str,
        metadata: Optional[RequestMetadata] = None,
    ) -> AuthResult:
        if not email or not password or profile is None:
            raise ValidationError("email, password and profile are required")
        try:
            role = Role(public_role)
        except ValueError as exc:
            raise ValidationError("invalid role", detail={"field": "role"}) from exc
        if role not in PUBLIC_ROLES:
            self.logger.warning("register_role_rejected", role=role.value)
            raise ValidationError(
                "role not allowed for self-registration", detail={"field": "role"}
            )
        user = await self._create_principal(
            email, password, profile, role, UserStatus.PENDING
        )
        result = self._start_session(user, metadata)
        self.activity.record(user.id, "register", request=metadata)
        self.logger.info("user_registered", user_id=user.id, role=role.value)
        return result

    async def login(
        self,
        email: str,
        password: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> AuthResult:
        if not isinstance(email, str) or not isinstance(password, str):
            raise AuthenticationError(INVALID_CREDENTIALS)
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            await self._dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self.hasher.verify_async(user.password_hash, password):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)
        ensure_can_authenticate(user.status)

        updates: Dict[str, Any] = {"last_login_at": utcnow()}
        if self.hasher.needs_rehash(user.password_hash):
            # The plaintext was verified above; hash it once under current parameters
            updates["password_hash"] = await self.hasher.hash_async(password)
            self.logger.info("password_rehashed", user_id=user.id)
        user = self.store.update_user(user.id, **updates) or user

        result = self._start_session(user, metadata)
        self.activity.record(user.id, "login", request=metadata)
        self.logger.info("user_logged_in", user_id=user.id)
        return result

    async def refresh_tokens(
        self,
        refresh_token: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> AuthResult:
        """Rotate a refresh token into a new pair.

        Unknown, expired, revoked and forged tokens all fail with the same
        error. The store lookup runs first so an expired session is deleted
        even though its JWT would also fail verification.
        """
        session = (
            self.sessions.find_by_token(refresh_token)
            if isinstance(refresh_token, str)
            else None
        )
        if session is None:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        try:
            claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        except AuthenticationError as exc:
            # JWT exp is truncated to the second, so it can lapse just before the row does
            self.store.delete_refresh_token(session.id)
            self.logger.info(
                "refresh_token_rejected",
                user_id=session.user_id,
                reason=exc.detail.get("reason"),
            )
            raise AuthenticationError(INVALID_REFRESH_TOKEN) from exc
        if session.user_id != claims.subject_id:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        user = self.store.get_user(session.user_id)
        if not user:
            self.store.delete_refresh_token(session.id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        ensure_can_authenticate(user.status)

        pair = self.tokens.issue_pair(user)
        new_session = self.sessions.rotate(
            session,
            pair["refresh_token"],
            self.tokens.ttl(TokenKind.REFRESH),
            metadata,
        )
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=new_session.id)
        return AuthResult(
            user=self.public_view(user),
            access_token=pair["access_token"],
            refresh_token=pair["refresh_token"],
            session_id=new_session.id,
        )

    async def logout(
        self, refresh_token: str, metadata: Optional[RequestMetadata] = None
    ) -> None:
        session = self.sessions.find_by_token(refresh_token)
        if session is None or not self.store.delete_refresh_token(session.id):
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        self.activity.record(session.user_id, "logout", request=metadata)
        self.logger.info("user_logged_out", user_id=session.user_id)

    async def logout_all(
        self, user_id: str, metadata: Optional[RequestMetadata] = None
    ) -> int:
        if not user_id:
            raise ValidationError("user id is required")
        removed = self.sessions.delete_all_for_user(user_id)
        self.activity.record(
            user_id,
            "logout_all",
            metadata={"tokens_removed": removed},
            request=metadata,
        )
        self.logger.info("user_logged_out_everywhere", user_id=user_id, tokens_removed=removed)
        return removed

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.verify(token, TokenKind.ACCESS)
        user = self.store.get_user(claims.subject_id)
        if not user:
            raise AuthenticationError("user not found")
        ensure_can_authenticate(user.status)
        return AuthContext(
            user_id=user.id,
            role=Role(user.role),
            email=user.email,
            token_id=claims.token_id,
        )

    async def change_password(
        self,
        actor: AuthContext,
        current_password: str,
        new_password: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> int:
        """Replace the actor's password and revoke every session.

        Returns the number of sessions removed.
        """
        if not current_password or not new_password:
            raise ValidationError("current and new password are required")
        user = self.store.get_user(actor.user_id)
        if not user:
            raise NotFoundError("user not found")
        if not await self.hasher.verify_async(user.password_hash, current_password):
            raise ValidationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        if not is_encodable(new_password):
            raise ValidationError(
                "password contains invalid characters", detail={"field": "new_password"}
            )
        new_hash = await self.hasher.hash_async(new_password)
        with self.store.transaction():
            self.store.update_user(user.id, password_hash=new_hash)
            removed = self.store.delete_user_refresh_tokens(user.id)
        self.activity.record(
            user.id,
            "change_password",
            metadata={"tokens_removed": removed},
            request=metadata,
        )
        self.logger.info("password_changed", user_id=user.id, tokens_removed=removed)
        return removed

    async def set_user_status(
        self,
        actor: AuthContext,
        target_id: str,
        status: UserStatus | str,
        metadata: Optional[RequestMetadata] = None,
    ) -> Dict[str, Any]:
        self.access.require_role(actor, Role.ADMIN)
        ensure_can_change_status(actor.user_id, target_id)
        try:
            new_status = UserStatus(status)
        except ValueError as exc:
            raise ValidationError("invalid status", detail={"field": "status"}) from exc
        target = self.store.get_user(target_id)
        if not target:
            raise NotFoundError("user not found")
        old_status = UserStatus(target.status)
        updated = self.store.update_user(target_id, status=new_status)
        if not updated:
            raise NotFoundError("user not found")
        self.activity.record(
            actor.user_id,
            "update_status",
            entity_id=target_id,
            metadata={"old_status": old_status.value, "new_status": new_status.value},
            request=metadata,
        )
        self.logger.info(
            "user_status_changed",
            actor_id=actor.user_id,
            user_id=target_id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return self.public_view(updated)

    async def force_logout(
        self,
        actor: AuthContext,
        target_id: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> int:
        self.access.require_role(actor, Role.ADMIN)
        if not self.store.get_user(target_id):
            raise NotFoundError("user not found")
        return await self.logout_all(target_id, metadata)

    async def get_user(self, actor: AuthContext, target_id: str) -> Dict[str, Any]:
        self.access.ensure_access(actor, target_id)
        user = self.store.get_user(target_id)
        if not user:
            raise NotFoundError("user not found")
        return self.public_view(user)
