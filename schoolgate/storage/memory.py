from __future__ import annotations

import contextlib
import copy
import threading
import uuid
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from schoolgate.durations import utcnow
from schoolgate.logging import get_logger
from schoolgate.storage.errors import ConstraintViolation
from schoolgate.storage.models import (
    ActivityLogEntry,
    NotificationSettings,
    Parent,
    ParentChild,
    Profile,
    Role,
    RoleRecord,
    SchoolClass,
    Session,
    Student,
    Teacher,
    User,
    UserStatus,
    new_role_record,
)

_UPDATABLE_USER_FIELDS = {"password_hash", "status", "last_login_at", "role", "email"}

_STATE_ATTRS = (
    "users",
    "profiles",
    "role_records",
    "notification_settings",
    "classes",
    "parent_children",
    "refresh_tokens",
    "activity_log",
)


class MemoryStore:
    """In-memory backing store for tests and local development.

    All operations take ``_data_lock``. ``transaction()`` holds the lock for the
    whole block and restores a snapshot if the block raises, which gives the
    same all-or-nothing behavior as the Postgres store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.profiles: Dict[str, Profile] = {}
        # user_id -> role-extension record
        self.role_records: Dict[str, RoleRecord] = {}
        self.notification_settings: Dict[str, NotificationSettings] = {}
        self.classes: Dict[str, SchoolClass] = {}
        self.parent_children: List[ParentChild] = []
        # session id -> refresh token record
        self.refresh_tokens: Dict[str, Session] = {}
        self.activity_log: List[ActivityLogEntry] = []
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    # transactions
    def _snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in _STATE_ATTRS}

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = self._snapshot()
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        role: Role,
        *,
        status: UserStatus = UserStatus.PENDING,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=Role(role),
                status=UserStatus(status),
            )
            self.users[user.id] = user
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.copy(user) if user else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                normalized = fields["email"].strip().lower()
                if any(
                    other.email == normalized and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", field="email")
                fields["email"] = normalized
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return copy.copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.profiles.pop(user_id, None)
            self.notification_settings.pop(user_id, None)
            record = self.role_records.pop(user_id, None)
            if isinstance(record, Parent):
                self.parent_children = [
                    link for link in self.parent_children if link.parent_id != record.id
                ]
            elif isinstance(record, Student):
                self.parent_children = [
                    link for link in self.parent_children if link.student_id != record.id
                ]
            elif isinstance(record, Teacher):
                for school_class in self.classes.values():
                    if school_class.home_teacher_id == record.id:
                        school_class.home_teacher_id = None
            for sess_id, sess in list(self.refresh_tokens.items()):
                if sess.user_id == user_id:
                    self.refresh_tokens.pop(sess_id, None)
            return True

    # profile / role data
    def create_profile(
        self,
        user_id: str,
        first_name: str,
        last_name: str,
        middle_name: Optional[str] = None,
    ) -> Profile:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for profile", {"user_id": user_id})
            profile = Profile(
                user_id=user_id,
                first_name=first_name,
                last_name=last_name,
                middle_name=middle_name,
            )
            self.profiles[user_id] = profile
            return copy.copy(profile)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(user_id)
            return copy.copy(profile) if profile else None

    def create_role_record(self, role: Role, user_id: str) -> RoleRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for role record", {"user_id": user_id})
            if user_id in self.role_records:
                raise ConstraintViolation("role record already exists", {"user_id": user_id})
            record = new_role_record(Role(role), user_id)
            self.role_records[user_id] = record
            return copy.copy(record)

    def get_role_record(self, user_id: str) -> Optional[RoleRecord]:
        with self._data_lock:
            record = self.role_records.get(user_id)
            return copy.copy(record) if record else None

    def create_notification_settings(self, user_id: str) -> NotificationSettings:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for notification settings", {"user_id": user_id}
                )
            settings = NotificationSettings(user_id=user_id)
            self.notification_settings[user_id] = settings
            return copy.copy(settings)

    def get_notification_settings(self, user_id: str) -> Optional[NotificationSettings]:
        with self._data_lock:
            settings = self.notification_settings.get(user_id)
            return copy.copy(settings) if settings else None

    # relationships
    def _record_of(self, user_id: str, kind: type) -> RoleRecord:
        record = self.role_records.get(user_id)
        if not isinstance(record, kind):
            raise ConstraintViolation(
                f"user has no {kind.__name__.lower()} record", {"user_id": user_id}
            )
        return record

    def create_class(
        self, name: str, home_teacher_user_id: Optional[str] = None
    ) -> SchoolClass:
        with self._data_lock:
            teacher_id = None
            if home_teacher_user_id:
                teacher_id = self._record_of(home_teacher_user_id, Teacher).id
                if any(c.home_teacher_id == teacher_id for c in self.classes.values()):
                    raise ConstraintViolation(
                        "teacher already has a home class",
                        {"user_id": home_teacher_user_id},
                    )
            school_class = SchoolClass(
                id=str(uuid.uuid4()), name=name, home_teacher_id=teacher_id
            )
            self.classes[school_class.id] = school_class
            return copy.copy(school_class)

    def assign_student_class(self, student_user_id: str, class_id: Optional[str]) -> Student:
        with self._data_lock:
            student = self._record_of(student_user_id, Student)
            if class_id is not None and class_id not in self.classes:
                raise ConstraintViolation("class not found", {"class_id": class_id})
            student.class_id = class_id
            return copy.copy(student)

    def link_parent_child(
        self,
        parent_user_id: str,
        student_user_id: str,
        *,
        relation: str = "parent",
        is_primary: bool = False,
    ) -> ParentChild:
        with self._data_lock:
            parent = self._record_of(parent_user_id, Parent)
            student = self._record_of(student_user_id, Student)
            for existing in self.parent_children:
                if existing.parent_id == parent.id and existing.student_id == student.id:
                    return copy.copy(existing)
            link = ParentChild(
                parent_id=parent.id,
                student_id=student.id,
                relation=relation,
                is_primary=is_primary,
            )
            self.parent_children.append(link)
            return copy.copy(link)

    def _student_user_ids(self, student_ids: Iterable[str]) -> List[str]:
        wanted = set(student_ids)
        return [
            record.user_id
            for record in self.role_records.values()
            if isinstance(record, Student) and record.id in wanted
        ]

    def list_child_user_ids(self, parent_user_id: str) -> List[str]:
        with self._data_lock:
            record = self.role_records.get(parent_user_id)
            if not isinstance(record, Parent):
                return []
            return self._student_user_ids(
                link.student_id for link in self.parent_children if link.parent_id == record.id
            )

    def get_home_class(self, teacher_user_id: str) -> Optional[SchoolClass]:
        with self._data_lock:
            record = self.role_records.get(teacher_user_id)
            if not isinstance(record, Teacher):
                return None
            school_class = next(
                (c for c in self.classes.values() if c.home_teacher_id == record.id), None
            )
            return copy.copy(school_class) if school_class else None

    def list_home_class_student_user_ids(self, teacher_user_id: str) -> List[str]:
        with self._data_lock:
            school_class = self.get_home_class(teacher_user_id)
            if not school_class:
                return []
            return [
                record.user_id
                for record in self.role_records.values()
                if isinstance(record, Student) and record.class_id == school_class.id
            ]

    # refresh tokens
    def lock_user_sessions(self, user_id: str) -> None:
        # transaction() already serializes every writer on _data_lock
        return None

    def create_refresh_token(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if any(existing.token == session.token for existing in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", field="token")
            self.refresh_tokens[session.id] = copy.copy(session)
            return session

    def get_refresh_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.refresh_tokens.values() if s.token == token), None)
            return copy.copy(sess) if sess else None

    def count_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for s in self.refresh_tokens.values() if s.user_id == user_id)

    def list_refresh_tokens(self, user_id: str) -> List[Session]:
        """Sessions of a user, oldest first."""
        with self._data_lock:
            sessions = [copy.copy(s) for s in self.refresh_tokens.values() if s.user_id == user_id]
            return sorted(sessions, key=lambda s: s.created_at)

    def delete_refresh_token(self, session_id: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(session_id, None) is not None

    def delete_refresh_tokens(self, session_ids: Iterable[str]) -> int:
        with self._data_lock:
            removed = 0
            for session_id in session_ids:
                if self.refresh_tokens.pop(session_id, None) is not None:
                    removed += 1
            return removed

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.refresh_tokens.items() if s.user_id == user_id]
            for sid in stale:
                self.refresh_tokens.pop(sid, None)
            return len(stale)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.refresh_tokens.items() if s.expires_at <= now]
            for sid in stale:
                self.refresh_tokens.pop(sid, None)
            return len(stale)

    # activity log
    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._data_lock:
            self.activity_log.append(copy.copy(entry))
            return entry

    def list_activity(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLogEntry]:
        with self._data_lock:
            entries = [
                copy.copy(e)
                for e in self.activity_log
                if user_id is None or e.user_id == user_id
            ]
            return sorted(entries, key=lambda e: e.created_at, reverse=True)[:limit]
