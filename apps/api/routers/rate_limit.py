"""Per-user request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis

from config import settings
from routers.auth_scope import AuthContext, get_auth_context

logger = logging.getLogger(__name__)


class LocalQuotaStore:
    """Fixed-window counters used when Redis cannot be reached."""

    def __init__(self) -> None:
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def consume(self, key: str, limit: int, window_seconds: int) -> bool:
        now = time.time()
        async with self._lock:
            for stale_key, (_, stale_reset) in list(self._counters.items()):
                if now >= stale_reset:
                    del self._counters[stale_key]
            count, reset_at = self._counters.get(key, (0, now + window_seconds))
            count += 1
            self._counters[key] = (count, reset_at)
            return count <= limit

    def clear(self) -> None:
        self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)


def local_quota_store(request: Request) -> LocalQuotaStore:
    store: Optional[LocalQuotaStore] = getattr(request.app.state, "local_quotas", None)
    if store is None:
        store = LocalQuotaStore()
        request.app.state.local_quotas = store
    return store


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return current <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable:
    """Return a dependency that caps requests per authenticated user."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{prefix}:{auth.user_id}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.debug(f"Redis quota check unavailable ({exc}); using local counters")
            allowed = await local_quota_store(request).consume(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
