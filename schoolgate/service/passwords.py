from __future__ import annotations

import asyncio
from typing import Any

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from schoolgate.config import (
    MIN_ARGON2_MEMORY_COST,
    MIN_ARGON2_PARALLELISM,
    MIN_ARGON2_TIME_COST,
    Settings,
)
from schoolgate.logging import get_logger

logger = get_logger(__name__)


def is_encodable(plaintext: str) -> bool:
    try:
        plaintext.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class PasswordHasherService:
    """argon2id hashing with fixed, configurable cost parameters."""

    def __init__(
        self,
        *,
        memory_cost: int = MIN_ARGON2_MEMORY_COST,
        time_cost: int = MIN_ARGON2_TIME_COST,
        parallelism: int = MIN_ARGON2_PARALLELISM,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasherService":
        return cls(
            memory_cost=settings.argon2_memory_cost,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, password_hash: Any, plaintext: Any) -> bool:
        """Return True on match; any malformed input or mismatch is False."""
        if not isinstance(password_hash, str) or not isinstance(plaintext, str):
            return False
        try:
            return self._pwd_hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_verification_failed", error_type=type(exc).__name__)
            return False
        except (UnicodeError, ValueError) as exc:
            # a stored hash or submitted password that is not valid UTF-8
            logger.warning("password_verification_failed", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except (InvalidHashError, ValueError):
            return True

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, password_hash: Any, plaintext: Any) -> bool:
        return await asyncio.to_thread(self.verify, password_hash, plaintext)
