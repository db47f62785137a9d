from __future__ import annotations

import hashlib
import json
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for login-failure counters and identity summaries."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR the failure counter; the window starts at the first failure, so the
    # TTL is only set when the counter is created.
    _LOGIN_FAILURE_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return attempts
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _login_key(identifier: str) -> str:
        """Hash the identifier so raw emails never appear in key names."""
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"auth:login_failures:{digest}"

    @staticmethod
    def _identity_key(identity_id: str) -> str:
        return f"auth:identity:{identity_id}"

    async def record_login_failure(self, identifier: str, window_seconds: int) -> int:
        attempts = await self._login_failure(
            keys=[self._login_key(identifier)], args=[max(1, int(window_seconds))]
        )
        return int(attempts)

    async def login_failure_count(self, identifier: str) -> int:
        raw = await self.client.get(self._login_key(identifier))
        return int(raw) if raw else 0

    async def clear_login_failures(self, identifier: str) -> None:
        await self.client.delete(self._login_key(identifier))

    async def get_identity_summary(self, identity_id: str) -> Optional[dict]:
        raw = await self.client.get(self._identity_key(identity_id))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await self.client.delete(self._identity_key(identity_id))
            return None

    async def set_identity_summary(
        self, identity_id: str, payload: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._identity_key(identity_id), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_identity_summary(self, identity_id: str) -> None:
        await self.client.delete(self._identity_key(identity_id))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
