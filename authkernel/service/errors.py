from __future__ import annotations

from typing import Dict, Optional, Type

from authkernel.service.results import ErrorKind, Failure


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakCredentialError(ValidationError):
    """Password rejected by the strength policy (400)."""
    error_code = "weak_credential"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialError(AuthenticationError):
    error_code = "invalid_credential"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBlockedError(ForbiddenError):
    error_code = "account_blocked"


class InsufficientPermissionError(ForbiddenError):
    error_code = "insufficient_permission"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "duplicate_credential"


class AccountLockedOutError(ServiceError):
    """Too many failed logins inside the lockout window (429)."""
    status_code = 429
    error_code = "account_locked_out"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_ERROR_FOR_KIND: Dict[ErrorKind, Type[ServiceError]] = {
    ErrorKind.WEAK_CREDENTIAL: WeakCredentialError,
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.DUPLICATE_CREDENTIAL: ConflictError,
    ErrorKind.INVALID_CREDENTIAL: InvalidCredentialError,
    ErrorKind.TOKEN_EXPIRED: TokenExpiredError,
    ErrorKind.TOKEN_INVALID: TokenInvalidError,
    ErrorKind.ACCOUNT_BLOCKED: AccountBlockedError,
    ErrorKind.INSUFFICIENT_PERMISSION: InsufficientPermissionError,
    ErrorKind.ACCOUNT_LOCKED_OUT: AccountLockedOutError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.INTERNAL_ERROR: ServerError,
}


def error_for_failure(failure: Failure) -> ServiceError:
    """Translate a tagged failure into the exception raised at the HTTP edge."""
    error_cls = _ERROR_FOR_KIND.get(failure.kind, ServerError)
    message = failure.message or failure.kind.value.replace("_", " ")
    return error_cls(message, detail=failure.detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakCredentialError",
    "AuthenticationError",
    "InvalidCredentialError",
    "TokenExpiredError",
    "TokenInvalidError",
    "ForbiddenError",
    "AccountBlockedError",
    "InsufficientPermissionError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedOutError",
    "ServerError",
    "error_for_failure",
]
