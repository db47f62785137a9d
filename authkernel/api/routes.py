from __future__ import annotations

import asyncio
from typing import Awaitable, Iterable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from authkernel.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    IdentityListResponse,
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    PasswordChangeResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RoleUpdateRequest,
    TokenPairResponse,
    TokenRefreshRequest,
)
from authkernel.logging import get_logger
from authkernel.service.auth import AuthContext
from authkernel.service.errors import ServiceError, error_for_failure
from authkernel.service.results import AuthResult
from authkernel.service.roles import IDENTITY_ADMINS, ROLE_ADMINS
from authkernel.service.runtime import get_runtime
from authkernel.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _run(flow: Awaitable[AuthResult[T]]) -> T:
    """Await a service flow under the request deadline and unwrap its result."""
    timeout = get_runtime().settings.request_timeout_seconds
    try:
        result = await asyncio.wait_for(flow, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("request_deadline_exceeded", timeout_seconds=timeout)
        raise ServiceError(
            "request timed out", status_code=503, error_code="server_error"
        )
    if not result.ok:
        raise error_for_failure(result)
    return result.value


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return await _run(get_runtime().auth.authenticate(token))


def require_roles(roles: Iterable[Role]):
    required = frozenset(roles)

    async def _dependency(authorization: Optional[str] = Header(None)) -> AuthContext:
        token = _extract_bearer(authorization)
        if not token:
            raise _http_error("unauthorized", "authentication required", status_code=401)
        return await _run(get_runtime().auth.authorize(token, required))

    return _dependency


get_identity_admin = require_roles(IDENTITY_ADMINS)
get_role_admin = require_roles(ROLE_ADMINS)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an identity and open its first session.

    Raises:
        400: If a field is malformed or the password is too weak
        403: If registration is disabled
        409: If the email is already registered
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "registration disabled", status_code=403)
    grant = await _run(
        runtime.auth.register(
            name=body.name,
            email=body.email,
            password=body.password,
            phone_number=body.phone_number,
            role=body.role,
            allowed_roles=runtime.settings.self_register_role_set,
        )
    )
    return Envelope(status="ok", data=AuthResponse.from_grant(grant))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are invalid
        403: If the account is blocked
        429: If the account is locked out after repeated failures
    """
    grant = await _run(get_runtime().auth.login(body.email, body.password))
    return Envelope(status="ok", data=AuthResponse.from_grant(grant))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    pair = await _run(get_runtime().auth.refresh(body.refresh_token))
    return Envelope(status="ok", data=TokenPairResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    revoked = await _run(get_runtime().auth.logout(body.refresh_token))
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    view = await _run(get_runtime().auth.get_identity(principal.identity_id))
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)):
    view = await _run(
        get_runtime().auth.update_profile(
            principal.identity_id, name=body.name, phone_number=body.phone_number
        )
    )
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


@router.put("/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    revoked = await _run(
        get_runtime().auth.change_password(
            principal.identity_id, body.current_password, body.new_password
        )
    )
    return Envelope(status="ok", data=PasswordChangeResponse(revoked_sessions=revoked))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    role: Optional[str] = Query(None, max_length=32),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    include_deleted: bool = Query(False),
    principal: AuthContext = Depends(get_identity_admin),
):
    views = await _run(
        get_runtime().auth.list_identities(
            role=role, limit=limit, offset=offset, include_deleted=include_deleted
        )
    )
    return Envelope(
        status="ok",
        data=IdentityListResponse(
            items=[IdentityResponse.from_view(v) for v in views], limit=limit, offset=offset
        ),
    )


@router.get("/users/{identity_id}", response_model=Envelope, tags=["users"])
async def get_user(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_identity_admin),
):
    view = await _run(get_runtime().auth.get_identity(identity_id))
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


def _reject_self_action(principal: AuthContext, identity_id: str, action: str) -> None:
    if principal.identity_id == identity_id:
        raise _http_error(
            "validation_error", f"cannot {action} your own account", status_code=400
        )


@router.put("/users/{identity_id}/block", response_model=Envelope, tags=["users"])
async def block_user(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_identity_admin),
):
    _reject_self_action(principal, identity_id, "block")
    view = await _run(get_runtime().auth.block_identity(identity_id))
    logger.info("admin_block", actor_id=principal.identity_id, identity_id=identity_id)
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


@router.put("/users/{identity_id}/unblock", response_model=Envelope, tags=["users"])
async def unblock_user(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_identity_admin),
):
    view = await _run(get_runtime().auth.unblock_identity(identity_id))
    logger.info("admin_unblock", actor_id=principal.identity_id, identity_id=identity_id)
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


@router.delete("/users/{identity_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_identity_admin),
):
    _reject_self_action(principal, identity_id, "delete")
    view = await _run(get_runtime().auth.soft_delete_identity(identity_id))
    logger.info("admin_soft_delete", actor_id=principal.identity_id, identity_id=identity_id)
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


@router.put("/users/{identity_id}/restore", response_model=Envelope, tags=["users"])
async def restore_user(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_identity_admin),
):
    view = await _run(get_runtime().auth.restore_identity(identity_id))
    logger.info("admin_restore", actor_id=principal.identity_id, identity_id=identity_id)
    return Envelope(status="ok", data=IdentityResponse.from_view(view))


@router.put("/users/{identity_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: RoleUpdateRequest,
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_role_admin),
):
    _reject_self_action(principal, identity_id, "change the role of")
    view = await _run(get_runtime().auth.set_identity_role(identity_id, body.role))
    logger.info(
        "admin_role_change",
        actor_id=principal.identity_id,
        identity_id=identity_id,
        role=view.role.value,
    )
    return Envelope(status="ok", data=IdentityResponse.from_view(view))
