from __future__ import annotations

import secrets
from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for cross-process locks."""

    DEFAULT_LOCK_TTL = 30

    # Delete the lock only while it still holds the caller's token
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def acquire_lock(
        self, name: str, ttl_seconds: int = DEFAULT_LOCK_TTL
    ) -> Optional[str]:
        """Try to take the named lock; return its token, or None if it is held."""
        token = secrets.token_hex(16)
        acquired = await self.client.set(
            f"lock:{name}", token, nx=True, ex=max(1, int(ttl_seconds))
        )
        return token if acquired else None

    async def release_lock(self, name: str, token: str) -> bool:
        released = await self.client.eval(
            self._RELEASE_LOCK_SCRIPT, 1, f"lock:{name}", token
        )
        return bool(released)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
