from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """In-process stand-in for ``RedisCache`` with the same async interface.

    Entries carry an absolute expiry on a monotonic clock and are dropped lazily
    on read. Used by the test suite and by development runs without Redis.
    """

    def __init__(
        self, *, key_prefix: str = "murmur", clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.key_prefix = key_prefix
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _refresh_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:refreshToken"

    def _two_factor_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:2faFailures"

    def _get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[self._refresh_key(user_id)] = (
                token,
                self._clock() + max(1, ttl_seconds),
            )

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._get(self._refresh_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(self._refresh_key(user_id), None)

    async def record_two_factor_failure(self, user_id: str, window_seconds: int) -> int:
        key = self._two_factor_key(user_id)
        with self._lock:
            current = self._get(key)
            if current is None:
                count = 1
                expires_at = self._clock() + max(1, window_seconds)
            else:
                count = int(current) + 1
                expires_at = self._entries[key][1]
            self._entries[key] = (str(count), expires_at)
            return count

    async def clear_two_factor_failures(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(self._two_factor_key(user_id), None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
