from __future__ import annotations

from schoolgate.service.errors import (
    AccountBlockedError,
    EmailNotVerifiedError,
    ForbiddenError,
)
from schoolgate.storage.models import UserStatus

BLOCKED_STATUSES = frozenset({UserStatus.SUSPENDED, UserStatus.INACTIVE})


def ensure_can_authenticate(status: UserStatus | str) -> None:
    """Only ACTIVE principals may obtain or use tokens.

    Checked on every login, refresh and access-token authentication because the
    status can change after a token is issued.
    """
    try:
        state = UserStatus(status)
    except ValueError as exc:
        raise AccountBlockedError() from exc
    if state in BLOCKED_STATUSES:
        raise AccountBlockedError()
    if state is UserStatus.PENDING:
        raise EmailNotVerifiedError()


def ensure_can_change_status(actor_id: str, target_id: str) -> None:
    if actor_id == target_id:
        raise ForbiddenError("cannot change your own status")
