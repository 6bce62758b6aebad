from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple

from authcore.logging import get_logger
from authcore.service.errors import RateLimitedError
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter:
    """Token-bucket limits keyed by caller-chosen strings (usually client address).

    Uses Redis when a cache is configured so limits hold across instances;
    otherwise falls back to a per-process bucket, which is only suitable for
    development and tests.
    """

    def __init__(self, cache: Optional[RedisCache] = None, *, max_local_keys: int = 10_000) -> None:
        self.cache = cache
        self.max_local_keys = max_local_keys
        # key -> (tokens, last_seen, refilled_at)
        self._local: Dict[str, Tuple[float, float, float]] = {}
        self._local_lock = threading.Lock()

    def _prune_local(self, now: float) -> None:
        # A refilled bucket behaves exactly like a missing one
        idle = [key for key, (_, _, refilled_at) in self._local.items() if refilled_at <= now]
        for key in idle:
            del self._local[key]
        if idle:
            logger.debug("rate_limit_buckets_pruned", removed=len(idle), kept=len(self._local))

    def _check_local(self, key: str, limit: int, window_seconds: int, cost: int) -> Tuple[bool, int, int]:
        now = time.monotonic()
        refill_rate = float(limit) / float(window_seconds)
        with self._local_lock:
            tokens, last_ts, _ = self._local.get(key, (float(limit), now, now))
            tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local[key] = (tokens, now, now + (float(limit) - tokens) / refill_rate)
            if len(self._local) > self.max_local_keys:
                self._prune_local(now)
        retry_after = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        return allowed, int(tokens), retry_after

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        if limit <= 0:
            return True, limit, 0
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        if self.cache is not None:
            return await self.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
        return self._check_local(key, limit, window_seconds, cost)

    async def enforce(self, key: str, limit: int, window_seconds: int) -> None:
        allowed, _remaining, retry_after = await self.check(key, limit, window_seconds)
        if not allowed:
            logger.warning("rate_limited", scope=key.split(":", 1)[0], retry_after=retry_after)
            raise RateLimitedError(retry_after)

    async def reset(self, key: Optional[str] = None) -> None:
        """Forget the bucket for ``key``, or every local bucket when omitted."""
        with self._local_lock:
            if key is None:
                self._local.clear()
            else:
                self._local.pop(key, None)
        if key is not None and self.cache is not None:
            await self.cache.clear_rate_limit(key)
