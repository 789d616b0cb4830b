from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

_DENYLIST_PREFIX = "auth:token:denylist:"


class RedisCache:
    """Thin Redis wrapper holding the token denylist."""

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
        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny a token id until its natural expiry."""
        if ttl_seconds > 0:
            await self.client.set(f"{_DENYLIST_PREFIX}{jti}", "1", ex=ttl_seconds)

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{_DENYLIST_PREFIX}{jti}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so it can be awaited like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def denylist_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(f"{_DENYLIST_PREFIX}{jti}", "1", ex=ttl_seconds)

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(self.client.exists(f"{_DENYLIST_PREFIX}{jti}"))

    async def close(self) -> None:
        self.client.close()
