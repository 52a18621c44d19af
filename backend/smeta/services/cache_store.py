"""
CacheStore — small TTL cache with an injected clock.

Each owner constructs its own store (``CacheStore(ttl_seconds=300)``) so the
lifetime of cached entries follows the owner, and tests drive expiry by
passing a fake ``clock``.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple


class CacheStore:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self._fresh_entry(key) is not None

    def _fresh_entry(self, key: Hashable) -> Optional[Tuple[float, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[0] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._fresh_entry(key)
        return default if entry is None else entry[1]

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or await ``loader()``; None results are not cached."""
        entry = self._fresh_entry(key)
        if entry is not None:
            return entry[1]
        value = await loader()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
