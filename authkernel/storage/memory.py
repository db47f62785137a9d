from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    Identity,
    RefreshTokenRecord,
    Role,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-process identity and refresh-token store.

    Every read and mutation runs under one re-entrant lock, so the
    check-then-insert in ``create_identity`` and the consume-then-issue in
    ``rotate_refresh_token`` are each indivisible. When ``fs_root`` is given the
    state is mirrored to a JSON file after each mutation and reloaded on start.
    Callers always receive copies; mutating a returned object never touches
    stored state.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._clock = clock
        self._new_id = id_factory
        # RLock so helpers can be called while a mutator holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime | None) -> str | None:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    # identities
    def _active_by_email(self, email: str) -> Optional[Identity]:
        return next(
            (
                ident
                for ident in self.identities.values()
                if ident.email == email and ident.deleted_at is None
            ),
            None,
        )

    def create_identity(
        self,
        *,
        name: str,
        email: str,
        password_hash: str,
        role: Role = Role.STUDENT,
        phone_number: Optional[str] = None,
    ) -> Identity:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._active_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._clock()
            identity = Identity(
                id=self._new_id(),
                name=name,
                email=normalized,
                password_hash=password_hash,
                role=role,
                phone_number=phone_number,
                created_at=now,
                updated_at=now,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return replace(identity)

    def get_identity_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        normalized = normalize_email(email)
        with self._data_lock:
            found = self._active_by_email(normalized)
            if found is None and include_deleted:
                deleted = [i for i in self.identities.values() if i.email == normalized]
                found = max(deleted, key=lambda i: i.deleted_at, default=None)
            return replace(found) if found else None

    def get_identity(
        self, identity_id: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None or (identity.deleted_at is not None and not include_deleted):
                return None
            return replace(identity)

    def list_identities(
        self,
        *,
        role: Optional[Role] = None,
        limit: int = 100,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> List[Identity]:
        with self._data_lock:
            results = [
                i
                for i in self.identities.values()
                if (include_deleted or i.deleted_at is None)
                and (role is None or i.role == role)
            ]
            results.sort(key=lambda i: i.created_at, reverse=True)
            return [replace(i) for i in results[offset : offset + limit]]

    def _mutate(self, identity_id: str, **changes) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            for key, value in changes.items():
                setattr(identity, key, value)
            identity.updated_at = self._clock()
            self._persist_state()
            return replace(identity)

    def set_identity_blocked(self, identity_id: str, blocked: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.get_identity(identity_id)
            if identity is None:
                return None
            return self._mutate(identity_id, blocked=blocked)

    def set_identity_role(self, identity_id: str, role: Role) -> Optional[Identity]:
        with self._data_lock:
            if self.get_identity(identity_id) is None:
                return None
            return self._mutate(identity_id, role=role)

    def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]:
        with self._data_lock:
            if self.get_identity(identity_id) is None:
                return None
            return self._mutate(identity_id, password_hash=password_hash)

    def update_identity_profile(
        self, identity_id: str, *, name: str, phone_number: Optional[str]
    ) -> Optional[Identity]:
        with self._data_lock:
            if self.get_identity(identity_id) is None:
                return None
            return self._mutate(identity_id, name=name, phone_number=phone_number)

    def soft_delete_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            if identity.deleted_at is not None:
                return replace(identity)
            return self._mutate(identity_id, deleted_at=self._clock())

    def restore_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            if identity.deleted_at is None:
                return replace(identity)
            if self._active_by_email(identity.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            return self._mutate(identity_id, deleted_at=None)

    # refresh tokens
    def issue_refresh_token(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshTokenRecord(
                id=self._new_id(),
                identity_id=identity_id,
                token=token,
                expires_at=expires_at,
                created_at=self._clock(),
            )
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_active_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record and record.is_active(self._clock()):
                return replace(record)
            return None

    def rotate_refresh_token(
        self, old_token: str, new_token: str, new_expires_at: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Consume ``old_token`` and issue ``new_token`` for the same owner.

        Returns None, leaving the store untouched, when the old token is
        unknown, revoked or expired. Raises ConstraintViolation, again leaving
        the old token active, when the successor cannot be stored.
        """
        with self._data_lock:
            now = self._clock()
            current = self.refresh_tokens.get(old_token)
            if current is None or not current.is_active(now):
                return None
            successor = self.issue_refresh_token(current.identity_id, new_token, new_expires_at)
            current.revoked = True
            current.revoked_at = now
            self._persist_state()
            return successor

    def revoke_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = self._clock()
            self._persist_state()
            return True

    def revoke_identity_refresh_tokens(self, identity_id: str) -> int:
        with self._data_lock:
            now = self._clock()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.identity_id == identity_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_expired_refresh_tokens(self, before: Optional[datetime] = None) -> int:
        cutoff = before or self._clock()
        with self._data_lock:
            stale = [
                token
                for token, record in self.refresh_tokens.items()
                if record.expires_at <= cutoff or record.revoked
            ]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            sessions=len(self.refresh_tokens),
        )
        return True

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "name": identity.name,
            "email": identity.email,
            "password_hash": identity.password_hash,
            "role": identity.role.value,
            "phone_number": identity.phone_number,
            "blocked": identity.blocked,
            "deleted_at": self._serialize_datetime(identity.deleted_at),
            "created_at": self._serialize_datetime(identity.created_at),
            "updated_at": self._serialize_datetime(identity.updated_at),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data.get("role", Role.STUDENT.value)),
            phone_number=data.get("phone_number"),
            blocked=bool(data.get("blocked", False)),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "identity_id": record.identity_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked": record.revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            identity_id=str(data["identity_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
