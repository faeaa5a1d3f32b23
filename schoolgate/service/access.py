from __future__ import annotations

from typing import List, Protocol

from schoolgate.logging import get_logger
from schoolgate.service.errors import ForbiddenError
from schoolgate.storage.models import Role

logger = get_logger(__name__)


class RelationshipSource(Protocol):
    def list_child_user_ids(self, parent_user_id: str) -> List[str]: ...

    def list_home_class_student_user_ids(self, teacher_user_id: str) -> List[str]: ...


class Principal(Protocol):
    user_id: str
    role: Role


class AccessControlEvaluator:
    """Decides whether one principal may read another principal's data.

    Rules in order: self, admin, a parent's own children, a home-room
    teacher's students. Relationships are read from the store on every call.
    """

    def __init__(self, relationships: RelationshipSource) -> None:
        self.relationships = relationships

    def can_access(self, actor: Principal, target_id: str) -> bool:
        if not target_id:
            return False
        if actor.user_id == target_id:
            return True
        role = Role(actor.role)
        if role is Role.ADMIN:
            return True
        if role is Role.PARENT:
            return target_id in self.relationships.list_child_user_ids(actor.user_id)
        if role is Role.TEACHER:
            return target_id in self.relationships.list_home_class_student_user_ids(
                actor.user_id
            )
        return False

    def ensure_access(self, actor: Principal, target_id: str) -> None:
        if not self.can_access(actor, target_id):
            logger.info(
                "access_denied",
                actor_id=actor.user_id,
                actor_role=Role(actor.role).value,
                target_id=target_id,
            )
            raise ForbiddenError("access denied")

    def require_role(self, actor: Principal, *roles: Role) -> None:
        if Role(actor.role) not in roles:
            raise ForbiddenError(
                "insufficient role",
                detail={"required": [Role(r).value for r in roles]},
            )
