from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from schoolgate.logging import get_logger
from schoolgate.storage.errors import ConstraintViolation
from schoolgate.storage.models import (
    ActivityLogEntry,
    Admin,
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
)

_ROLE_TABLES = {
    Role.STUDENT: "student",
    Role.PARENT: "parent",
    Role.TEACHER: "teacher",
    Role.ADMIN: "admin",
}

_UPDATABLE_USER_FIELDS = ("password_hash", "status", "last_login_at", "role", "email")


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        role=Role(row["role"]),
        status=UserStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row.get("last_login_at"),
    )


def _row_to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        user_agent=row.get("user_agent"),
        ip_address=row.get("ip_address"),
    )


def _row_to_role_record(role: Role, row: Dict[str, Any]) -> RoleRecord:
    record_id = str(row["id"])
    user_id = str(row["user_id"])
    match role:
        case Role.STUDENT:
            class_id = row.get("class_id")
            return Student(id=record_id, user_id=user_id, class_id=str(class_id) if class_id else None)
        case Role.PARENT:
            return Parent(id=record_id, user_id=user_id)
        case Role.TEACHER:
            return Teacher(id=record_id, user_id=user_id)
        case Role.ADMIN:
            return Admin(id=record_id, user_id=user_id)
    raise ValueError(f"unsupported role: {role!r}")


class PostgresStore:
    """Postgres-backed store for principals, sessions and the activity log.

    ``transaction()`` binds one pooled connection to the current context;
    every store call made inside the block runs on that connection and is
    committed or rolled back together.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Any] = ContextVar(f"schoolgate_tx_{id(self)}", default=None)
        self._verify_required_schema()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _connect(self):
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._tx_conn.get() is not None:
            yield self
            return
        # pool.connection() commits on clean exit and rolls back on any exception
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                yield self
            finally:
                self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_profile",
            "student",
            "parent",
            "teacher",
            "admin",
            "school_class",
            "parent_child",
            "notification_settings",
            "refresh_token",
            "activity_log",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        role: Role,
        *,
        status: UserStatus = UserStatus.PENDING,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, status)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        Role(role).value,
                        UserStatus(status).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_FIELDS)
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not _is_uuid(user_id):
            return None
        if not fields:
            return self.get_user(user_id)
        assignments = []
        params: List[Any] = []
        for name in _UPDATABLE_USER_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if name == "role":
                value = Role(value).value
            elif name == "status":
                value = UserStatus(value).value
            elif name == "email":
                value = value.strip().lower()
            assignments.append(f"{name} = %s")
            params.append(value)
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)}, updated_at = now() "
                    "WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return _row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # profile / role data
    def create_profile(
        self,
        user_id: str,
        first_name: str,
        last_name: str,
        middle_name: Optional[str] = None,
    ) -> Profile:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_profile (user_id, first_name, last_name, middle_name)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user_id, first_name, last_name, middle_name),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for profile", {"user_id": user_id})
        return Profile(
            user_id=user_id, first_name=first_name, last_name=last_name, middle_name=middle_name
        )

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_profile WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return Profile(
            user_id=str(row["user_id"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            middle_name=row.get("middle_name"),
            avatar=row.get("avatar"),
        )

    def create_role_record(self, role: Role, user_id: str) -> RoleRecord:
        role = Role(role)
        table = _ROLE_TABLES[role]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO {table} (user_id) VALUES (%s) RETURNING *", (user_id,)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role record already exists", {"user_id": user_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for role record", {"user_id": user_id})
        return _row_to_role_record(role, row)

    def get_role_record(self, user_id: str) -> Optional[RoleRecord]:
        with self._connect() as conn:
            user_row = conn.execute(
                "SELECT role FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            if not user_row:
                return None
            role = Role(user_row["role"])
            row = conn.execute(
                f"SELECT * FROM {_ROLE_TABLES[role]} WHERE user_id = %s", (user_id,)
            ).fetchone()
        return _row_to_role_record(role, row) if row else None

    def create_notification_settings(self, user_id: str) -> NotificationSettings:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO notification_settings (user_id) VALUES (%s)", (user_id,)
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for notification settings", {"user_id": user_id}
            )
        return NotificationSettings(user_id=user_id)

    def get_notification_settings(self, user_id: str) -> Optional[NotificationSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_settings WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return NotificationSettings(
            user_id=str(row["user_id"]),
            email_enabled=row["email_enabled"],
            push_enabled=row["push_enabled"],
            grades_enabled=row["grades_enabled"],
            homework_enabled=row["homework_enabled"],
        )

    # relationships
    def _record_id(self, conn, table: str, user_id: str) -> str:
        row = conn.execute(
            f"SELECT id FROM {table} WHERE user_id = %s", (user_id,)
        ).fetchone()
        if not row:
            raise ConstraintViolation(f"user has no {table} record", {"user_id": user_id})
        return str(row["id"])

    def create_class(
        self, name: str, home_teacher_user_id: Optional[str] = None
    ) -> SchoolClass:
        try:
            with self._connect() as conn:
                teacher_id = (
                    self._record_id(conn, "teacher", home_teacher_user_id)
                    if home_teacher_user_id
                    else None
                )
                row = conn.execute(
                    "INSERT INTO school_class (name, home_teacher_id) VALUES (%s, %s) RETURNING *",
                    (name, teacher_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "teacher already has a home class", {"user_id": home_teacher_user_id}
            )
        home = row.get("home_teacher_id")
        return SchoolClass(
            id=str(row["id"]), name=row["name"], home_teacher_id=str(home) if home else None
        )

    def assign_student_class(self, student_user_id: str, class_id: Optional[str]) -> Student:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE student SET class_id = %s WHERE user_id = %s RETURNING *",
                    (class_id, student_user_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("class not found", {"class_id": class_id})
        if not row:
            raise ConstraintViolation("user has no student record", {"user_id": student_user_id})
        return _row_to_role_record(Role.STUDENT, row)

    def link_parent_child(
        self,
        parent_user_id: str,
        student_user_id: str,
        *,
        relation: str = "parent",
        is_primary: bool = False,
    ) -> ParentChild:
        with self._connect() as conn:
            parent_id = self._record_id(conn, "parent", parent_user_id)
            student_id = self._record_id(conn, "student", student_user_id)
            conn.execute(
                """
                INSERT INTO parent_child (parent_id, student_id, relation, is_primary)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (parent_id, student_id) DO NOTHING
                """,
                (parent_id, student_id, relation, is_primary),
            )
        return ParentChild(
            parent_id=parent_id, student_id=student_id, relation=relation, is_primary=is_primary
        )

    def list_child_user_ids(self, parent_user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.user_id FROM parent p
                JOIN parent_child pc ON pc.parent_id = p.id
                JOIN student s ON s.id = pc.student_id
                WHERE p.user_id = %s
                """,
                (parent_user_id,),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def get_home_class(self, teacher_user_id: str) -> Optional[SchoolClass]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT c.* FROM teacher t
                JOIN school_class c ON c.home_teacher_id = t.id
                WHERE t.user_id = %s
                """,
                (teacher_user_id,),
            ).fetchone()
        if not row:
            return None
        return SchoolClass(
            id=str(row["id"]), name=row["name"], home_teacher_id=str(row["home_teacher_id"])
        )

    def list_home_class_student_user_ids(self, teacher_user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.user_id FROM teacher t
                JOIN school_class c ON c.home_teacher_id = t.id
                JOIN student s ON s.class_id = c.id
                WHERE t.user_id = %s
                """,
                (teacher_user_id,),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # refresh tokens
    def lock_user_sessions(self, user_id: str) -> None:
        """Serialize session changes for one user until the transaction ends."""
        with self._connect() as conn:
            conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,))

    def create_refresh_token(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at, user_agent, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.expires_at,
                        session.user_agent,
                        session.ip_address,
                        session.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", field="token")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_refresh_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def count_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_token WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def list_refresh_tokens(self, user_id: str) -> List[Session]:
        """Sessions of a user, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at ASC, id ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def delete_refresh_token(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE id = %s", (session_id,))
            return result.rowcount == 1

    def delete_refresh_tokens(self, session_ids: Iterable[str]) -> int:
        ids = list(session_ids)
        if not ids:
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE id = ANY(%s::uuid[])", (ids,)
            )
            return result.rowcount

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return result.rowcount

    # activity log
    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_log (id, user_id, action, entity, entity_id, metadata, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.entity,
                    entry.entity_id,
                    Jsonb(entry.metadata) if entry.metadata is not None else None,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def list_activity(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLogEntry]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM activity_log WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM activity_log ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [
            ActivityLogEntry(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                action=row["action"],
                entity=row["entity"],
                entity_id=row.get("entity_id"),
                metadata=row.get("metadata"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
