from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    Identity,
    RefreshTokenRecord,
    Role,
    normalize_email,
    utcnow,
)

_IDENTITY_COLUMNS = (
    "id, name, email, password_hash, role, phone_number, blocked, "
    "deleted_at, created_at, updated_at"
)
_TOKEN_COLUMNS = "id, identity_id, token, expires_at, created_at, revoked, revoked_at"


class PostgresStore:
    """Postgres-backed identity and refresh-token store."""

    def __init__(
        self,
        dsn: str,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._clock = clock
        self._new_id = id_factory
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        required_tables = ["app_identity", "refresh_token"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _identity_from_row(row: dict) -> Identity:
        return Identity(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row.get("role") or Role.STUDENT.value),
            phone_number=row.get("phone_number"),
            blocked=bool(row.get("blocked", False)),
            deleted_at=row.get("deleted_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            identity_id=str(row["identity_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _parse_id(identity_id: str) -> Optional[str]:
        """Canonical UUID text, or None when the value cannot name a row."""
        try:
            return str(uuid.UUID(str(identity_id)))
        except ValueError:
            return None

    # identities
    def create_identity(
        self,
        *,
        name: str,
        email: str,
        password_hash: str,
        role: Role = Role.STUDENT,
        phone_number: Optional[str] = None,
    ) -> Identity:
        identity_id = self._new_id()
        now = self._clock()
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_identity (id, name, email, password_hash, role, phone_number, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_IDENTITY_COLUMNS}
                    """,
                    (identity_id, name, normalized, password_hash, role.value, phone_number, now, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._identity_from_row(row)

    def get_identity_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        query = f"SELECT {_IDENTITY_COLUMNS} FROM app_identity WHERE email = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        # an active row sorts first, then the most recently deleted one
        query += " ORDER BY deleted_at DESC NULLS FIRST LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, (normalize_email(email),)).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity(
        self, identity_id: str, *, include_deleted: bool = False
    ) -> Optional[Identity]:
        parsed = self._parse_id(identity_id)
        if parsed is None:
            return None
        query = f"SELECT {_IDENTITY_COLUMNS} FROM app_identity WHERE id = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (parsed,)).fetchone()
        return self._identity_from_row(row) if row else None

    def list_identities(
        self,
        *,
        role: Optional[Role] = None,
        limit: int = 100,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> List[Identity]:
        clauses = []
        params: list = []
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if role is not None:
            clauses.append("role = %s")
            params.append(role.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM app_identity {where} "
                "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def _update_active(self, identity_id: str, **changes) -> Optional[Identity]:
        parsed = self._parse_id(identity_id)
        if parsed is None:
            return None
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_identity SET {assignments}, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_IDENTITY_COLUMNS}
                """,
                (*changes.values(), self._clock(), parsed),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_identity_blocked(self, identity_id: str, blocked: bool) -> Optional[Identity]:
        return self._update_active(identity_id, blocked=blocked)

    def set_identity_role(self, identity_id: str, role: Role) -> Optional[Identity]:
        return self._update_active(identity_id, role=role.value)

    def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]:
        return self._update_active(identity_id, password_hash=password_hash)

    def update_identity_profile(
        self, identity_id: str, *, name: str, phone_number: Optional[str]
    ) -> Optional[Identity]:
        return self._update_active(identity_id, name=name, phone_number=phone_number)

    def soft_delete_identity(self, identity_id: str) -> Optional[Identity]:
        parsed = self._parse_id(identity_id)
        if parsed is None:
            return None
        now = self._clock()
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_identity SET deleted_at = COALESCE(deleted_at, %s), updated_at = %s
                WHERE id = %s
                RETURNING {_IDENTITY_COLUMNS}
                """,
                (now, now, parsed),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def restore_identity(self, identity_id: str) -> Optional[Identity]:
        parsed = self._parse_id(identity_id)
        if parsed is None:
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_identity SET deleted_at = NULL, updated_at = %s
                    WHERE id = %s
                    RETURNING {_IDENTITY_COLUMNS}
                    """,
                    (self._clock(), parsed),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._identity_from_row(row) if row else None

    # refresh tokens
    def issue_refresh_token(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        parsed = self._parse_id(identity_id)
        if parsed is None:
            raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_token (id, identity_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (self._new_id(), parsed, token, expires_at, self._clock()),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._token_from_row(row)

    def get_active_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM refresh_token
                WHERE token = %s AND NOT revoked AND expires_at > %s
                """,
                (token, self._clock()),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_token: str, new_token: str, new_expires_at: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Consume ``old_token`` and insert ``new_token`` in one transaction.

        The conditional UPDATE takes the row lock, so of two concurrent
        rotations of the same value only one sees a returned row.
        """
        now = self._clock()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    consumed = conn.execute(
                        """
                        UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                        WHERE token = %s AND NOT revoked AND expires_at > %s
                        RETURNING identity_id
                        """,
                        (now, old_token, now),
                    ).fetchone()
                    if not consumed:
                        return None
                    row = conn.execute(
                        f"""
                        INSERT INTO refresh_token (id, identity_id, token, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING {_TOKEN_COLUMNS}
                        """,
                        (self._new_id(), consumed["identity_id"], new_token, new_expires_at, now),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._token_from_row(row)

    def revoke_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = %s WHERE token = %s AND NOT revoked",
                (self._clock(), token),
            )
            return result.rowcount > 0

    def revoke_identity_refresh_tokens(self, identity_id: str) -> int:
        parsed = self._parse_id(identity_id)
        if parsed is None:
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = %s WHERE identity_id = %s AND NOT revoked",
                (self._clock(), parsed),
            )
            return result.rowcount

    def purge_expired_refresh_tokens(self, before: Optional[datetime] = None) -> int:
        cutoff = before or self._clock()
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s OR revoked",
                (cutoff,),
            )
            return result.rowcount
