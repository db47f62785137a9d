from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from authkernel.logging import get_logger
from authkernel.storage.models import IdentitySummary, utcnow
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class IdentityCache:
    """Short-lived cache of identity summaries keyed by identity id.

    Entries are hints; callers re-read the store on a miss and every status
    change invalidates the entry.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        ttl_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._state_lock = threading.Lock()
        # identity_id -> (summary, expires_at)
        self._entries: dict[str, tuple[IdentitySummary, datetime]] = {}

    async def get(self, identity_id: str) -> Optional[IdentitySummary]:
        if self.cache:
            payload = await self.cache.get_identity_summary(identity_id)
            if payload is None:
                return None
            try:
                return IdentitySummary.from_dict(payload)
            except (KeyError, ValueError) as exc:
                logger.warning("identity_cache_entry_invalid", identity_id=identity_id, error=str(exc))
                await self.cache.delete_identity_summary(identity_id)
                return None
        with self._state_lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                return None
            summary, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(identity_id, None)
                return None
            return summary

    async def set(
        self, identity_id: str, summary: IdentitySummary, ttl_seconds: Optional[int] = None
    ) -> None:
        ttl = ttl_seconds or self.ttl_seconds
        if self.cache:
            await self.cache.set_identity_summary(identity_id, summary.to_dict(), ttl)
            return
        with self._state_lock:
            self._entries[identity_id] = (summary, self._clock() + timedelta(seconds=ttl))

    async def invalidate(self, identity_id: str) -> None:
        if self.cache:
            await self.cache.delete_identity_summary(identity_id)
            return
        with self._state_lock:
            self._entries.pop(identity_id, None)
