from __future__ import annotations

import asyncio
import re
import secrets
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from kgotla.config import Settings
from kgotla.logging import get_logger
from kgotla.service.errors import InputTooLongError, WeakPasswordError
from kgotla.service.schemas import PasswordStrength

logger = get_logger(__name__)

# Longer input is rejected, never truncated
MAX_PASSWORD_BYTES = 1024
MIN_PASSWORD_LENGTH = 8
PASSWORD_SYMBOLS = "@$!%*?&"

_LETTER_RUNS = tuple(
    "abcdefghijklmnopqrstuvwxyz"[i : i + 3] for i in range(24)
)
_DIGIT_RUNS = tuple("1234567890"[i : i + 3] for i in range(8))
_REPEATED = re.compile(r"(.)\1{2,}")

# Violation codes reported by validate_strength
TOO_SHORT = "too_short"
MISSING_LOWERCASE = "missing_lowercase"
MISSING_UPPERCASE = "missing_uppercase"
MISSING_DIGIT = "missing_digit"
MISSING_SYMBOL = "missing_symbol"
REPEATED_CHARACTERS = "repeated_characters"
SEQUENTIAL_CHARACTERS = "sequential_characters"


class PasswordService:
    """argon2id hashing, verification and strength policy.

    ``hash``/``verify`` are CPU-bound and deliberately slow; async callers use
    ``hash_async``/``verify_async`` so the event loop keeps serving other
    requests while a worker thread does the work.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
        forbid_sequences: bool = False,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self.forbid_sequences = forbid_sequences
        # Verified against when there is no usable stored hash so timing matches
        self._dummy_hash = self._hasher.hash(secrets.token_hex(16))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordService":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            forbid_sequences=settings.password_forbid_sequences,
        )

    def _check_length(self, password: str) -> None:
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InputTooLongError(
                f"Password exceeds the maximum length of {MAX_PASSWORD_BYTES} bytes",
                detail={"max_bytes": MAX_PASSWORD_BYTES},
            )

    def hash(self, password: str) -> str:
        self._check_length(password)
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        """Return True only for a matching hash.

        Unknown accounts (``password_hash`` None) and unparseable hashes still
        pay for one full verification.
        """
        self._check_length(password)
        target = password_hash or self._dummy_hash
        try:
            matched = self._hasher.verify(target, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            self._burn(password)
            return False
        return matched and password_hash is not None

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHash, ValueError):
            return False

    async def hash_async(self, password: str) -> str:
        self._check_length(password)
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password: str, password_hash: Optional[str]) -> bool:
        self._check_length(password)
        return await asyncio.to_thread(self.verify, password, password_hash)

    def validate_strength(self, password: str) -> PasswordStrength:
        violations: List[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            violations.append(TOO_SHORT)
        if not re.search(r"[a-z]", password):
            violations.append(MISSING_LOWERCASE)
        if not re.search(r"[A-Z]", password):
            violations.append(MISSING_UPPERCASE)
        if not re.search(r"\d", password):
            violations.append(MISSING_DIGIT)
        if not any(ch in PASSWORD_SYMBOLS for ch in password):
            violations.append(MISSING_SYMBOL)
        if _REPEATED.search(password):
            violations.append(REPEATED_CHARACTERS)
        if self.forbid_sequences and self._has_sequential_run(password):
            violations.append(SEQUENTIAL_CHARACTERS)
        return PasswordStrength(valid=not violations, violations=violations)

    @staticmethod
    def _has_sequential_run(password: str) -> bool:
        lowered = password.lower()
        return any(run in lowered for run in _LETTER_RUNS) or any(
            run in password for run in _DIGIT_RUNS
        )

    def ensure_strong(self, password: str) -> None:
        result = self.validate_strength(password)
        if not result.valid:
            raise WeakPasswordError(result.violations)
