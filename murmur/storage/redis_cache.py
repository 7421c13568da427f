from __future__ import annotations

import functools
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from murmur.logging import get_logger
from murmur.storage.errors import StorageUnavailable

logger = get_logger(__name__)


def _translate_errors(func):
    """Re-raise client and transport failures as ``StorageUnavailable``."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (RedisError, OSError) as exc:
            logger.error("redis_unavailable", operation=func.__name__, error=str(exc))
            raise StorageUnavailable("redis") from exc

    return wrapper


class RedisCache:
    """Redis-backed Token Cache: one refresh token per user plus 2FA failure counters."""

    def __init__(
        self, redis_url: str, *, key_prefix: str = "murmur", socket_timeout: float = 5.0
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _refresh_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:refreshToken"

    def _two_factor_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:2faFailures"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_errors
    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        await self.client.set(self._refresh_key(user_id), token, ex=max(1, ttl_seconds))

    @_translate_errors
    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return await self.client.get(self._refresh_key(user_id))

    @_translate_errors
    async def delete_refresh_token(self, user_id: str) -> None:
        await self.client.delete(self._refresh_key(user_id))

    @_translate_errors
    async def record_two_factor_failure(self, user_id: str, window_seconds: int) -> int:
        """Increment the failure counter and return the new count.

        The window is set only when the counter is created, so repeated failures
        do not keep extending it.
        """
        key = self._two_factor_key(user_id)
        pipe = self.client.pipeline()
        pipe.set(key, 0, ex=max(1, window_seconds), nx=True)
        pipe.incr(key)
        _, count = await pipe.execute()
        return int(count)

    @_translate_errors
    async def clear_two_factor_failures(self, user_id: str) -> None:
        await self.client.delete(self._two_factor_key(user_id))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
