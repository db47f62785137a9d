from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from authkernel.logging import get_logger
from authkernel.storage.models import normalize_email, utcnow
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class LoginThrottle:
    """Counts failed logins per identifier inside a fixed window.

    The window opens at the first failure and the counter lapses once it has
    passed. With Redis the increment and the window expiry happen in one Lua
    call so every instance sees the same count. Without Redis a process-local
    map guarded by a lock stands in, which is only correct for a single
    process.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        max_attempts: int = 5,
        window: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window = window
        self._clock = clock
        self._state_lock = threading.Lock()
        # identifier -> (count, window_start)
        self._attempts: dict[str, tuple[int, datetime]] = {}

    @staticmethod
    def _key(identifier: str) -> str:
        return normalize_email(identifier)

    def _live_entry(self, key: str, now: datetime) -> Optional[tuple[int, datetime]]:
        entry = self._attempts.get(key)
        if entry and now - entry[1] > self.window:
            self._attempts.pop(key, None)
            return None
        return entry

    async def record_failure(self, identifier: str) -> int:
        key = self._key(identifier)
        if self.cache:
            attempts = await self.cache.record_login_failure(
                key, int(self.window.total_seconds())
            )
        else:
            now = self._clock()
            with self._state_lock:
                entry = self._live_entry(key, now)
                if entry:
                    attempts, window_start = entry[0] + 1, entry[1]
                else:
                    attempts, window_start = 1, now
                self._attempts[key] = (attempts, window_start)
        if attempts == self.max_attempts:
            logger.warning("login_lockout_triggered", attempts=attempts)
        return attempts

    async def failure_count(self, identifier: str) -> int:
        key = self._key(identifier)
        if self.cache:
            return await self.cache.login_failure_count(key)
        with self._state_lock:
            entry = self._live_entry(key, self._clock())
            return entry[0] if entry else 0

    async def is_locked_out(self, identifier: str) -> bool:
        return await self.failure_count(identifier) >= self.max_attempts

    async def reset(self, identifier: str) -> None:
        key = self._key(identifier)
        if self.cache:
            await self.cache.clear_login_failures(key)
            return
        with self._state_lock:
            self._attempts.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop lapsed in-process counters; returns how many were removed."""
        now = self._clock()
        with self._state_lock:
            stale = [
                key
                for key, (_, window_start) in self._attempts.items()
                if now - window_start > self.window
            ]
            for key in stale:
                self._attempts.pop(key, None)
        return len(stale)
