from __future__ import annotations

from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from propauth.config import Settings
from propauth.logging import get_logger
from propauth.service.errors import ValidationError

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
MAX_PASSWORD_LENGTH = 128


class PasswordHasher:
    """argon2id hashing with per-hash salt; cost factors come from settings."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = Argon2Hasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        """Return False on any mismatch or malformed hash; never raises."""
        if not password or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True


class PasswordPolicy:
    def __init__(self, settings: Settings) -> None:
        self.min_length = settings.password_min_length
        self.require_upper = settings.password_require_upper
        self.require_number = settings.password_require_number
        self.require_special = settings.password_require_special

    def problems(self, password: str) -> List[str]:
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"password must be at least {self.min_length} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            problems.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
        if self.require_upper and not any(ch.isupper() for ch in password):
            problems.append("password must contain an uppercase letter")
        if self.require_number and not any(ch.isdigit() for ch in password):
            problems.append("password must contain a number")
        if self.require_special and not any(ch in SPECIAL_CHARACTERS for ch in password):
            problems.append("password must contain a special character")
        return problems

    def validate(self, password: str, *, field: str = "password") -> None:
        problems = self.problems(password or "")
        if problems:
            raise ValidationError(
                problems[0], detail={"field": field, "problems": problems}
            )
