from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hrsecurity.logging import get_logger
from hrsecurity.storage.models import TenantSecurityPolicy

_UPPERCASE = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def build_hasher(
    *, time_cost: int = 3, memory_cost_kib: int = 65536, parallelism: int = 4
) -> PasswordHasher:
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=memory_cost_kib,
        parallelism=parallelism,
        type=Type.ID,
    )


def password_violations(password: str, policy: TenantSecurityPolicy) -> List[str]:
    """Return every rule ``password`` breaks; an empty list means it is acceptable."""
    violations: List[str] = []
    if len(password) < policy.password_min_length:
        violations.append(f"At least {policy.password_min_length} characters")
    if policy.password_require_uppercase and not _UPPERCASE.search(password):
        violations.append("At least one uppercase letter")
    if policy.password_require_number and not _DIGIT.search(password):
        violations.append("At least one number")
    if policy.password_require_special and not _SPECIAL.search(password):
        violations.append("At least one special character")
    return violations


class PasswordVerifier:
    """argon2id hashing and comparison for account passwords."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self.hasher = hasher or build_hasher()
        self.logger = get_logger(__name__)
        # Burned on unknown accounts so a miss costs the same as a wrong password
        self._dummy_hash = self.hasher.hash("hrsecurity-timing-equalizer")

    def hash(self, plaintext: str) -> str:
        return self.hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self.hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self.hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False

    def validate_against_policy(
        self, plaintext: str, policy: TenantSecurityPolicy
    ) -> List[str]:
        return password_violations(plaintext, policy)
