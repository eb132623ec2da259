from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from lettera.logging import get_logger
from lettera.service.errors import HashingError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_SYMBOL_PATTERN = re.compile("[" + re.escape(PASSWORD_SYMBOLS) + "]")
_DIGIT_PATTERN = re.compile(r"[0-9]")


def password_violations(password: str) -> List[str]:
    """Return every strength rule ``password`` breaks, in a stable order."""
    violations: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        violations.append(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        violations.append(
            f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
        )
    if not _DIGIT_PATTERN.search(password):
        violations.append("Password must contain at least one digit")
    if not _SYMBOL_PATTERN.search(password):
        violations.append("Password must contain at least one special character")
    return violations


class PasswordHasher:
    """Salted argon2id hashing with fixed cost parameters.

    Both operations are CPU-bound; async callers run them through
    ``asyncio.to_thread``.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except Argon2HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingError() from exc

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Return True on match; mismatches and malformed hashes return False."""
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_malformed")
            return False
