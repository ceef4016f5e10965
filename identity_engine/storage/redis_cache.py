from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for attempt windows shared across workers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window anchored at the first attempt, with a lockout once the
    # window is exhausted. Read, evaluate and write happen in one script so
    # concurrent workers cannot both observe the same count.
    _ATTEMPT_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local lockout = tonumber(ARGV[4])
local retention = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'attempts', 'window_start', 'locked_until')
local attempts = tonumber(data[1])
local window_start = tonumber(data[2])
local locked_until = tonumber(data[3])

if locked_until ~= nil and locked_until > now then
  return {0, math.ceil(locked_until - now), math.floor(locked_until)}
end

local in_window = window_start ~= nil and (now - window_start) < window

if in_window and attempts ~= nil and attempts >= max_attempts then
  locked_until = now + lockout
  redis.call('HSET', key, 'locked_until', locked_until, 'last_attempt', now)
  redis.call('EXPIRE', key, math.max(math.ceil(lockout + retention), 1))
  return {0, math.ceil(lockout), math.floor(locked_until)}
end

if in_window then
  redis.call('HSET', key, 'attempts', attempts + 1, 'last_attempt', now)
else
  redis.call('HSET', key, 'attempts', 1, 'window_start', now, 'last_attempt', now)
  redis.call('HDEL', key, 'locked_until')
end
redis.call('EXPIRE', key, math.max(math.ceil(retention), 1))
return {1, 0, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._attempt_window = self.client.register_script(self._ATTEMPT_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _normalize_rate_key(identifier: str, endpoint: str) -> str:
        """Hash the identifier so delimiters in client input cannot collide keys."""

        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"rate:{endpoint}:{digest}"

    async def check_attempt_window(
        self,
        identifier: str,
        endpoint: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
        retention_seconds: int,
        now: float | None = None,
    ) -> Tuple[bool, int, int]:
        """Count one attempt and return ``(allowed, retry_after, locked_until_epoch)``."""

        allowed, retry_after, locked_until = await self._attempt_window(
            keys=[self._normalize_rate_key(identifier, endpoint)],
            args=[
                time.time() if now is None else now,
                max_attempts,
                window_seconds,
                lockout_seconds,
                retention_seconds,
            ],
        )
        return bool(int(allowed)), int(retry_after), int(locked_until)

    async def reset_attempt_window(self, identifier: str, endpoint: str) -> None:
        await self.client.delete(self._normalize_rate_key(identifier, endpoint))
