from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Protocol

from authkernel.logging import get_logger, hash_identifier
from authkernel.service.identity_cache import IdentityCache
from authkernel.service.passwords import PasswordHasher, validate_password_policy
from authkernel.service.results import AuthResult, ErrorKind, Failure, Ok
from authkernel.service.roles import Decision, RoleGuard, RoleLike
from authkernel.service.throttle import LoginThrottle
from authkernel.service.tokens import TokenIssuer
from authkernel.service.validation import (
    validate_email,
    validate_name,
    validate_phone_number,
)
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    Identity,
    IdentitySummary,
    RefreshTokenRecord,
    Role,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def create_identity(
        self,
        *,
        name: str,
        email: str,
        password_hash: str,
        role: Role = Role.STUDENT,
        phone_number: Optional[str] = None,
    ) -> Identity: ...

    def get_identity_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[Identity]: ...

    def get_identity(
        self, identity_id: str, *, include_deleted: bool = False
    ) -> Optional[Identity]: ...

    def list_identities(
        self,
        *,
        role: Optional[Role] = None,
        limit: int = 100,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> List[Identity]: ...

    def set_identity_blocked(self, identity_id: str, blocked: bool) -> Optional[Identity]: ...

    def set_identity_role(self, identity_id: str, role: Role) -> Optional[Identity]: ...

    def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]: ...

    def update_identity_profile(
        self, identity_id: str, *, name: str, phone_number: Optional[str]
    ) -> Optional[Identity]: ...

    def soft_delete_identity(self, identity_id: str) -> Optional[Identity]: ...

    def restore_identity(self, identity_id: str) -> Optional[Identity]: ...

    def issue_refresh_token(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def get_active_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, old_token: str, new_token: str, new_expires_at: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token: str) -> bool: ...

    def revoke_identity_refresh_tokens(self, identity_id: str) -> int: ...

    def purge_expired_refresh_tokens(self, before: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class IdentityView:
    """Public projection of an identity, safe to return to clients."""

    id: str
    name: str
    email: str
    role: Role
    phone_number: Optional[str]
    blocked: bool
    deleted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityView":
        return cls(
            id=identity.id,
            name=identity.name,
            email=identity.email,
            role=identity.role,
            phone_number=identity.phone_number,
            blocked=identity.blocked,
            deleted_at=identity.deleted_at,
            created_at=identity.created_at,
            updated_at=identity.updated_at,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class SessionGrant:
    identity: IdentityView
    tokens: TokenPair


@dataclass(frozen=True)
class AuthContext:
    identity_id: str
    role: Role
    token_id: Optional[str] = None


def _invalid_credential() -> Failure:
    # one message for unknown email and wrong password alike
    return Failure(ErrorKind.INVALID_CREDENTIAL, "invalid email or password")


def _not_found(identity_id: str) -> Failure:
    return Failure(ErrorKind.NOT_FOUND, "identity not found", {"identity_id": identity_id})


class AuthService:
    """Registration, login, refresh rotation, logout and access resolution.

    Expected outcomes come back as ``Ok``/``Failure`` values. Store and cache
    errors that are not part of the contract propagate to the caller.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        throttle: LoginThrottle,
        identity_cache: IdentityCache,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.throttle = throttle
        self.identity_cache = identity_cache
        self._clock = clock
        self.logger = logger

    # helpers
    def _issue_pair(self, identity_id: str, role: Role) -> TokenPair:
        access = self.issuer.issue_access({"sub": identity_id, "role": role.value})
        refresh = self.issuer.issue_refresh({"sub": identity_id})
        self.store.issue_refresh_token(identity_id, refresh.value, refresh.expires_at)
        return TokenPair(
            access_token=access.value,
            refresh_token=refresh.value,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def _resolve_summary(self, identity_id: str) -> Optional[IdentitySummary]:
        """Cache first, then the store of record; deleted rows are included.

        Only a read miss fills the cache. The row is read again after the
        write, so a status change that invalidated the entry while the first
        read was in flight cannot leave a stale summary behind.
        """
        cached = await self.identity_cache.get(identity_id)
        if cached is not None:
            return cached
        identity = self.store.get_identity(identity_id, include_deleted=True)
        if identity is None:
            return None
        summary = identity.summary()
        await self.identity_cache.set(identity_id, summary)
        current = self.store.get_identity(identity_id, include_deleted=True)
        if current is None or current.summary() != summary:
            await self.identity_cache.invalidate(identity_id)
            return current.summary() if current else None
        return summary

    async def _after_status_change(self, identity: Optional[Identity], event: str, **fields):
        if identity is None:
            return
        await self.identity_cache.invalidate(identity.id)
        self.logger.info(event, identity_id=identity.id, **fields)

    # registration and login
    async def register(
        self,
        name: str,
        email: str,
        password: str,
        phone_number: Optional[str] = None,
        role: Optional[RoleLike] = None,
        *,
        allowed_roles: Optional[Iterable[RoleLike]] = None,
    ) -> AuthResult[SessionGrant]:
        try:
            clean_name = validate_name(name)
            clean_email = validate_email(email)
            clean_phone = validate_phone_number(phone_number)
        except ValueError as exc:
            return Failure(ErrorKind.VALIDATION_ERROR, str(exc))

        resolved_role = Role.parse(role) if role is not None else Role.STUDENT
        if resolved_role is None:
            return Failure(
                ErrorKind.VALIDATION_ERROR, "unknown role", {"field": "role", "value": str(role)}
            )
        if allowed_roles is not None and not RoleGuard.allows(resolved_role, allowed_roles):
            return Failure(
                ErrorKind.VALIDATION_ERROR,
                "role cannot be chosen at registration",
                {"field": "role", "value": resolved_role.value},
            )

        reasons = validate_password_policy(password)
        if reasons:
            return Failure(
                ErrorKind.WEAK_CREDENTIAL, "password does not meet policy", {"reasons": reasons}
            )

        try:
            identity = self.store.create_identity(
                name=clean_name,
                email=clean_email,
                password_hash=self.hasher.hash(password),
                role=resolved_role,
                phone_number=clean_phone,
            )
        except ConstraintViolation:
            self.logger.info("register_duplicate", email=clean_email)
            return Failure(ErrorKind.DUPLICATE_CREDENTIAL, "email already registered")

        tokens = self._issue_pair(identity.id, identity.role)
        self.logger.info("identity_registered", identity_id=identity.id, role=identity.role.value)
        return Ok(SessionGrant(identity=IdentityView.from_identity(identity), tokens=tokens))

    async def login(self, email: str, password: str) -> AuthResult[SessionGrant]:
        if not email or not password:
            return Failure(ErrorKind.VALIDATION_ERROR, "email and password are required")
        key = normalize_email(email)
        if await self.throttle.is_locked_out(key):
            self.logger.warning("login_locked_out", email_hash=hash_identifier(key))
            return Failure(
                ErrorKind.ACCOUNT_LOCKED_OUT,
                "too many failed login attempts; try again later",
                {"retry_after_seconds": int(self.throttle.window.total_seconds())},
            )

        identity = self.store.get_identity_by_email(key)
        if identity is None:
            self.hasher.verify_dummy(password)
            await self.throttle.record_failure(key)
            self.logger.info("login_failed", reason="unknown_email", email_hash=hash_identifier(key))
            return _invalid_credential()
        if not self.hasher.verify(password, identity.password_hash):
            attempts = await self.throttle.record_failure(key)
            self.logger.info(
                "login_failed", reason="bad_password", identity_id=identity.id, attempts=attempts
            )
            return _invalid_credential()
        if identity.blocked:
            self.logger.warning("login_blocked_identity", identity_id=identity.id)
            return Failure(ErrorKind.ACCOUNT_BLOCKED, "account is blocked")

        await self.throttle.reset(key)
        if self.hasher.needs_rehash(identity.password_hash):
            self.store.update_password_hash(identity.id, self.hasher.hash(password))
        tokens = self._issue_pair(identity.id, identity.role)
        self.logger.info("login_succeeded", identity_id=identity.id)
        return Ok(SessionGrant(identity=IdentityView.from_identity(identity), tokens=tokens))

    # session lifecycle
    async def refresh(self, refresh_token: str) -> AuthResult[TokenPair]:
        verified = self.issuer.verify_refresh(refresh_token)
        if not verified.ok:
            return verified
        claims = verified.value

        successor = self.issuer.issue_refresh({"sub": claims["sub"]})
        record = self.store.rotate_refresh_token(
            refresh_token, successor.value, successor.expires_at
        )
        if record is None:
            # signature was valid, so the value was consumed, revoked or expired server side
            self.logger.warning("refresh_rejected", identity_id=claims["sub"], jti=claims.get("jti"))
            return Failure(ErrorKind.TOKEN_INVALID, "refresh token is no longer valid")

        summary = await self._resolve_summary(record.identity_id)
        if summary is None or not summary.is_active:
            self.store.revoke_refresh_token(successor.value)
            self.logger.warning("refresh_inactive_identity", identity_id=record.identity_id)
            return Failure(ErrorKind.ACCOUNT_BLOCKED, "account is blocked")

        access = self.issuer.issue_access(
            {"sub": record.identity_id, "role": summary.role.value}
        )
        self.logger.info("refresh_rotated", identity_id=record.identity_id)
        return Ok(
            TokenPair(
                access_token=access.value,
                refresh_token=successor.value,
                access_expires_at=access.expires_at,
                refresh_expires_at=successor.expires_at,
            )
        )

    async def logout(self, refresh_token: str) -> AuthResult[bool]:
        revoked = bool(refresh_token) and self.store.revoke_refresh_token(refresh_token)
        self.logger.info("logout", revoked=revoked)
        return Ok(revoked)

    async def authenticate(self, access_token: str) -> AuthResult[AuthContext]:
        verified = self.issuer.verify_access(access_token)
        if not verified.ok:
            return verified
        claims = verified.value
        summary = await self._resolve_summary(str(claims["sub"]))
        if summary is None:
            return Failure(ErrorKind.TOKEN_INVALID, "token subject does not exist")
        if not summary.is_active:
            return Failure(ErrorKind.ACCOUNT_BLOCKED, "account is blocked")
        return Ok(AuthContext(identity_id=summary.id, role=summary.role, token_id=claims.get("jti")))

    async def authorize(
        self, access_token: str, required_roles: Iterable[RoleLike]
    ) -> AuthResult[AuthContext]:
        resolved = await self.authenticate(access_token)
        if not resolved.ok:
            return resolved
        context = resolved.value
        if RoleGuard.check(context.role, required_roles) is Decision.DENY:
            self.logger.info(
                "authorization_denied", identity_id=context.identity_id, role=context.role.value
            )
            return Failure(ErrorKind.INSUFFICIENT_PERMISSION, "insufficient permissions")
        return Ok(context)

    # identity administration
    async def get_identity(self, identity_id: str) -> AuthResult[IdentityView]:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            return _not_found(identity_id)
        return Ok(IdentityView.from_identity(identity))

    async def list_identities(
        self,
        *,
        role: Optional[RoleLike] = None,
        limit: int = 100,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> AuthResult[List[IdentityView]]:
        resolved_role = Role.parse(role) if role is not None else None
        if role is not None and resolved_role is None:
            return Failure(ErrorKind.VALIDATION_ERROR, "unknown role", {"field": "role"})
        identities = self.store.list_identities(
            role=resolved_role,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
            include_deleted=include_deleted,
        )
        return Ok([IdentityView.from_identity(i) for i in identities])

    async def block_identity(self, identity_id: str) -> AuthResult[IdentityView]:
        identity = self.store.set_identity_blocked(identity_id, True)
        if identity is None:
            return _not_found(identity_id)
        await self._after_status_change(identity, "identity_blocked")
        return Ok(IdentityView.from_identity(identity))

    async def unblock_identity(self, identity_id: str) -> AuthResult[IdentityView]:
        identity = self.store.set_identity_blocked(identity_id, False)
        if identity is None:
            return _not_found(identity_id)
        await self._after_status_change(identity, "identity_unblocked")
        return Ok(IdentityView.from_identity(identity))

    async def soft_delete_identity(self, identity_id: str) -> AuthResult[IdentityView]:
        identity = self.store.soft_delete_identity(identity_id)
        if identity is None:
            return _not_found(identity_id)
        revoked = self.store.revoke_identity_refresh_tokens(identity.id)
        await self._after_status_change(identity, "identity_soft_deleted", revoked_count=revoked)
        return Ok(IdentityView.from_identity(identity))

    async def restore_identity(self, identity_id: str) -> AuthResult[IdentityView]:
        try:
            identity = self.store.restore_identity(identity_id)
        except ConstraintViolation:
            return Failure(
                ErrorKind.DUPLICATE_CREDENTIAL, "email is in use by another active identity"
            )
        if identity is None:
            return _not_found(identity_id)
        await self._after_status_change(identity, "identity_restored")
        return Ok(IdentityView.from_identity(identity))

    async def set_identity_role(
        self, identity_id: str, role: RoleLike
    ) -> AuthResult[IdentityView]:
        resolved_role = Role.parse(role)
        if resolved_role is None:
            return Failure(ErrorKind.VALIDATION_ERROR, "unknown role", {"field": "role"})
        identity = self.store.set_identity_role(identity_id, resolved_role)
        if identity is None:
            return _not_found(identity_id)
        await self._after_status_change(identity, "identity_role_changed", role=resolved_role.value)
        return Ok(IdentityView.from_identity(identity))

    async def update_profile(
        self,
        identity_id: str,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> AuthResult[IdentityView]:
        """Update display name and phone number; ``None`` leaves a field as is."""
        identity = self.store.get_identity(identity_id)
        if identity is None:
            return _not_found(identity_id)
        try:
            new_name = validate_name(name) if name is not None else identity.name
            new_phone = (
                validate_phone_number(phone_number)
                if phone_number is not None
                else identity.phone_number
            )
        except ValueError as exc:
            return Failure(ErrorKind.VALIDATION_ERROR, str(exc))
        updated = self.store.update_identity_profile(
            identity_id, name=new_name, phone_number=new_phone
        )
        if updated is None:
            return _not_found(identity_id)
        await self._after_status_change(updated, "identity_profile_updated")
        return Ok(IdentityView.from_identity(updated))

    async def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> AuthResult[int]:
        """Replace the password and revoke every outstanding refresh token.

        Returns the number of refresh tokens revoked.
        """
        identity = self.store.get_identity(identity_id)
        if identity is None:
            return _not_found(identity_id)
        if not self.hasher.verify(current_password, identity.password_hash):
            self.logger.info("password_change_rejected", identity_id=identity_id)
            return _invalid_credential()
        reasons = validate_password_policy(new_password)
        if new_password == current_password:
            reasons.append("new password must differ from the current one")
        if reasons:
            return Failure(
                ErrorKind.WEAK_CREDENTIAL, "password does not meet policy", {"reasons": reasons}
            )
        self.store.update_password_hash(identity_id, self.hasher.hash(new_password))
        revoked = self.store.revoke_identity_refresh_tokens(identity_id)
        self.logger.info("password_changed", identity_id=identity_id, revoked_count=revoked)
        return Ok(revoked)

    def purge_expired_tokens(self) -> int:
        """Drop expired or revoked refresh tokens and lapsed local counters."""
        purged = self.store.purge_expired_refresh_tokens(self._clock())
        self.throttle.cleanup_expired()
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged
