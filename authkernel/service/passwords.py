from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "password123",
        "admin",
        "qwerty",
        "letmein",
        "welcome",
        "monkey",
        "1234567890",
        "abc123",
    }
)

_SPECIAL_PATTERN = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


def validate_password_policy(password: str) -> List[str]:
    """Return the list of policy rules ``password`` breaks; empty when acceptable."""
    if not isinstance(password, str):
        return ["password must be a string"]
    reasons: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        reasons.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        reasons.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        reasons.append("password must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        reasons.append("password must contain a lowercase letter")
    if not re.search(r"\d", password):
        reasons.append("password must contain a digit")
    if not _SPECIAL_PATTERN.search(password):
        reasons.append("password must contain a special character")
    if password.lower() in COMMON_PASSWORDS:
        reasons.append("password is too common")
    return reasons


class PasswordHasher:
    """argon2id hashing with a configurable work factor.

    ``verify`` never raises for a wrong password or a malformed stored hash;
    both come back as False.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # fixed hash compared against when the account does not exist
        self._dummy_hash = self._hasher.hash("dummy-password-for-timing")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Spend the same work as a real verification; always False."""
        self.verify(plaintext, self._dummy_hash)
        return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True
