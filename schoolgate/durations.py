"""Compact duration strings (``15m``, ``7d``) and expiry helpers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from schoolgate.logging import get_logger

logger = get_logger(__name__)

DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
DEFAULT_FALLBACK = timedelta(days=7)

_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def try_parse_duration(value: Optional[str]) -> Optional[timedelta]:
    """Parse ``<digits><s|m|h|d>``; return None when the string does not match."""
    if not isinstance(value, str):
        return None
    match = DURATION_PATTERN.match(value.strip())
    if not match:
        return None
    amount = int(match.group(1))
    return timedelta(**{_UNITS[match.group(2)]: amount})


def parse_duration(
    value: Optional[str],
    *,
    fallback: timedelta = DEFAULT_FALLBACK,
    setting: str = "duration",
) -> timedelta:
    """Parse a duration string, falling back to ``fallback`` on bad input.

    The fallback is always logged so a misconfigured TTL is visible.
    """
    parsed = try_parse_duration(value)
    if parsed is not None:
        return parsed
    logger.warning(
        "duration_unparseable_fallback",
        setting=setting,
        value=value,
        fallback_seconds=int(fallback.total_seconds()),
    )
    return fallback


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    current = now or utcnow()
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= current
