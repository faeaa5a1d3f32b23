from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique or foreign-key rule on accounts, sessions or role records failed.

    ``field`` names the offending column when one applies (``email`` for a
    duplicate account, ``token`` for a duplicate refresh token) so callers can
    branch on it without digging through ``detail``.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if field is not None:
            self.detail.setdefault("field", field)
        self.field: Optional[str] = field or self.detail.get("field")


__all__ = ["ConstraintViolation"]
