from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Union

from schoolgate.durations import utcnow

MAX_USER_AGENT_LENGTH = 500
# Long enough for a full IPv6 address with an embedded IPv4 tail
MAX_IP_ADDRESS_LENGTH = 45


class Role(str, Enum):
    STUDENT = "STUDENT"
    PARENT = "PARENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


# Roles a visitor may pick for themselves at registration
PUBLIC_ROLES = frozenset({Role.STUDENT, Role.PARENT})


class UserStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: Role
    status: UserStatus = UserStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Profile:
    user_id: str
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    avatar: Optional[str] = None


@dataclass
class Student:
    id: str
    user_id: str
    class_id: Optional[str] = None


@dataclass
class Parent:
    id: str
    user_id: str


@dataclass
class Teacher:
    id: str
    user_id: str


@dataclass
class Admin:
    id: str
    user_id: str


RoleRecord = Union[Student, Parent, Teacher, Admin]


def new_role_record(role: Role, user_id: str) -> RoleRecord:
    """Build the role-extension record that belongs to a new principal."""
    match role:
        case Role.STUDENT:
            return Student(id=_new_id(), user_id=user_id)
        case Role.PARENT:
            return Parent(id=_new_id(), user_id=user_id)
        case Role.TEACHER:
            return Teacher(id=_new_id(), user_id=user_id)
        case Role.ADMIN:
            return Admin(id=_new_id(), user_id=user_id)
    raise ValueError(f"unsupported role: {role!r}")


@dataclass
class SchoolClass:
    id: str
    name: str
    home_teacher_id: Optional[str] = None


@dataclass
class ParentChild:
    parent_id: str
    student_id: str
    relation: str = "parent"
    is_primary: bool = False


@dataclass
class NotificationSettings:
    user_id: str
    email_enabled: bool = True
    push_enabled: bool = True
    grades_enabled: bool = True
    homework_enabled: bool = True


@dataclass
class Session:
    """A live refresh token bound to one device/browser of a principal."""

    id: str
    user_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=_new_id(),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + ttl,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            ip_address=ip_address[:MAX_IP_ADDRESS_LENGTH] if ip_address else None,
        )


@dataclass
class ActivityLogEntry:
    id: str
    user_id: str
    action: str
    entity: str
    entity_id: Optional[str] = None
    metadata: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        action: str,
        entity: str,
        entity_id: Optional[str] = None,
        *,
        metadata: Dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "ActivityLogEntry":
        return cls(
            id=_new_id(),
            user_id=user_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            metadata=metadata,
            ip_address=ip_address[:MAX_IP_ADDRESS_LENGTH] if ip_address else None,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
        )
