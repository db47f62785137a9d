from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkernel.service.auth import IdentityView, SessionGrant, TokenPair
from authkernel.service.results import ErrorKind

_VALID_ERROR_CODES = frozenset(
    {kind.value for kind in ErrorKind}
    | {"unauthorized", "forbidden", "server_error", "conflict"}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    # field-level rules live in the service so that failures carry error kinds
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=256)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    role: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., max_length=1024)


class ProfileUpdateRequest(BaseModel):
    """Omitted fields stay as they are; an empty phone number clears it."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=256)
    phone_number: Optional[str] = Field(default=None, max_length=32)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=32)


class IdentityResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    phone_number: Optional[str] = None
    blocked: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_view(cls, view: IdentityView) -> "IdentityResponse":
        return cls(
            id=view.id,
            name=view.name,
            email=view.email,
            role=view.role.value,
            phone_number=view.phone_number,
            blocked=view.blocked,
            deleted_at=view.deleted_at,
            created_at=view.created_at,
            updated_at=view.updated_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    identity: IdentityResponse
    tokens: TokenPairResponse

    @classmethod
    def from_grant(cls, grant: SessionGrant) -> "AuthResponse":
        return cls(
            identity=IdentityResponse.from_view(grant.identity),
            tokens=TokenPairResponse.from_pair(grant.tokens),
        )


class LogoutResponse(BaseModel):
    revoked: bool


class PasswordChangeResponse(BaseModel):
    revoked_sessions: int


class IdentityListResponse(BaseModel):
    items: list[IdentityResponse]
    limit: int
    offset: int
