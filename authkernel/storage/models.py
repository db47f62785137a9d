from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_CONTROLS = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def strip_invisible(value: str) -> str:
    """Drop zero-width and bidi-control characters."""
    return "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_CONTROLS)


def normalize_email(email: str) -> str:
    """Canonical form used for storage, uniqueness checks, lookups and lockout keys."""
    return unicodedata.normalize("NFKC", strip_invisible(email or "")).strip().lower()


class Role(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"
    HR = "hr"
    SUPPORT = "support"

    @classmethod
    def parse(cls, value: "Role | str | None") -> Optional["Role"]:
        if isinstance(value, Role):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass
class Identity:
    id: str
    name: str
    email: str
    password_hash: str
    role: Role = Role.STUDENT
    phone_number: Optional[str] = None
    blocked: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def summary(self) -> "IdentitySummary":
        return IdentitySummary(
            id=self.id,
            role=self.role,
            blocked=self.blocked,
            deleted_at=self.deleted_at,
        )


@dataclass(frozen=True)
class IdentitySummary:
    """Cacheable projection of an identity; never carries the password hash."""

    id: str
    role: Role
    blocked: bool = False
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not self.blocked and self.deleted_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "blocked": self.blocked,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "IdentitySummary":
        deleted_at = payload.get("deleted_at")
        return cls(
            id=str(payload["id"]),
            role=Role(payload["role"]),
            blocked=bool(payload.get("blocked", False)),
            deleted_at=datetime.fromisoformat(deleted_at) if deleted_at else None,
        )


@dataclass
class RefreshTokenRecord:
    id: str
    identity_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and self.expires_at > (now or utcnow())
