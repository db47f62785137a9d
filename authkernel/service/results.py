from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Expected failure outcomes of the credential and session flows."""

    WEAK_CREDENTIAL = "weak_credential"
    DUPLICATE_CREDENTIAL = "duplicate_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    ACCOUNT_BLOCKED = "account_blocked"
    ACCOUNT_LOCKED_OUT = "account_locked_out"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    ok: bool = field(default=False, init=False)


AuthResult = Union[Ok[T], Failure]


__all__ = ["AuthResult", "ErrorKind", "Failure", "Ok"]
