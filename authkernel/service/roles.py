from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Union

from authkernel.storage.models import Role

RoleLike = Union[Role, str]


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class RoleGuard:
    """Membership check of a resolved role against a required role set.

    Deny by default: an unknown role, a missing role or an empty requirement
    never produces ALLOW.
    """

    @staticmethod
    def _coerce(role: Optional[RoleLike]) -> Optional[Role]:
        return Role.parse(role)

    @classmethod
    def check(cls, resolved_role: Optional[RoleLike], required_roles: Iterable[RoleLike]) -> Decision:
        role = cls._coerce(resolved_role)
        if role is None:
            return Decision.DENY
        required = {r for r in (cls._coerce(item) for item in required_roles) if r is not None}
        return Decision.ALLOW if role in required else Decision.DENY

    @classmethod
    def allows(cls, resolved_role: Optional[RoleLike], required_roles: Iterable[RoleLike]) -> bool:
        return cls.check(resolved_role, required_roles) is Decision.ALLOW


# Role sets used by the identity administration routes
IDENTITY_ADMINS = frozenset({Role.ADMIN, Role.HR})
ROLE_ADMINS = frozenset({Role.ADMIN})
