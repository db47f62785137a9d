from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from authkernel.logging import get_logger
from authkernel.service.results import AuthResult, ErrorKind, Failure, Ok
from authkernel.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    value: str
    jti: str
    expires_at: datetime


class TokenIssuer:
    """Mints and verifies HS256 signed access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``token_type`` claim, so one kind is never accepted in place of the other.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        leeway: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway
        self._clock = clock
        self._new_id = id_factory

    @property
    def access_ttl(self) -> timedelta:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _issue(self, token_type: str, claims: dict[str, Any]) -> IssuedToken:
        now = self._clock()
        expires_at = now + self._ttls[token_type]
        jti = self._new_id()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "token_type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        value = f"{signing_input}.{self._sign(token_type, signing_input)}"
        return IssuedToken(value=value, jti=jti, expires_at=expires_at)

    def issue_access(self, claims: dict[str, Any]) -> IssuedToken:
        return self._issue(ACCESS, claims)

    def issue_refresh(self, claims: dict[str, Any]) -> IssuedToken:
        return self._issue(REFRESH, claims)

    def verify_access(self, value: str) -> AuthResult[dict]:
        return self._verify(ACCESS, value)

    def verify_refresh(self, value: str) -> AuthResult[dict]:
        return self._verify(REFRESH, value)

    def _verify(self, token_type: str, value: Optional[str]) -> AuthResult[dict]:
        invalid = Failure(ErrorKind.TOKEN_INVALID, "token is invalid")
        if not value or not isinstance(value, str):
            return invalid
        try:
            header_b64, payload_b64, sig_b64 = value.split(".")
        except ValueError:
            return invalid

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return invalid
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=getattr(header, "get", lambda _: None)("alg"))
            return invalid

        expected_sig = self._sign(token_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return invalid
        if not isinstance(payload, dict):
            return invalid

        if payload.get("token_type") != token_type:
            return invalid
        if payload.get("iss") != self.issuer:
            return invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return invalid
        if not payload.get("sub"):
            return invalid
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return invalid
        if exp_ts <= self._clock().timestamp() - self._leeway.total_seconds():
            return Failure(ErrorKind.TOKEN_EXPIRED, "token has expired")
        return Ok(payload)
