from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed rate limit state shared by every service instance.

    Security state (lockout counters, refresh tokens, pending sessions) never
    lives here; losing Redis only loosens throttling.
    """

    # GCRA: one key per subject holding the theoretical arrival time. Server
    # time is used so instances with skewed clocks agree.
    _GCRA_SCRIPT = """
local key = KEYS[1]
local interval = tonumber(ARGV[1])
local burst = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])

local clock = redis.call('TIME')
local now = tonumber(clock[1]) + tonumber(clock[2]) / 1000000

local tat = tonumber(redis.call('GET', key))
if tat == nil or tat < now then
  tat = now
end

local new_tat = tat + interval * cost
local allow_at = new_tat - interval * burst
if allow_at > now then
  return {0, 0, math.ceil(allow_at - now)}
end

redis.call('SET', key, tostring(new_tat), 'PX', math.ceil((new_tat - now) * 1000))
return {1, math.floor((now - allow_at) / interval), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, prefix: str = "authcore"):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._gcra = self.client.register_script(self._GCRA_SCRIPT)

    def verify_connection(self) -> None:
        """Ping once at startup with a throwaway sync client."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def rate_key(self, key: str) -> str:
        """``login:10.0.0.1`` -> ``authcore:rl:login:<digest>``.

        The scope stays readable for operators; the subject (an address or
        identifier chosen by the client) is hashed.
        """
        scope, _, subject = key.partition(":")
        digest = hashlib.sha256(subject.encode()).hexdigest()[:32]
        return f"{self.prefix}:rl:{scope}:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Admit up to ``limit`` calls per ``window_seconds`` with full burst.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        interval = float(window_seconds) / float(limit)
        allowed, remaining, retry_after = await self._gcra(
            keys=[self.rate_key(key)], args=[interval, limit, max(1, cost)]
        )
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after or 0)

    async def clear_rate_limit(self, key: str) -> None:
        await self.client.delete(self.rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
