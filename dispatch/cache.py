"""Thread-safe TTL cache for resolved fallback chains."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any


class InMemoryTTLCache:
    """
    Thread-safe in-memory cache with TTL (Time To Live).

    Keys are plain hashable values such as (tier, modality). A TTL of zero
    disables caching since every entry is already expired on read.
    """

    def __init__(self, ttl_seconds: float):
        self._cache: dict[Any, tuple[Any, datetime]] = {}
        self._lock = threading.Lock()
        self._ttl = timedelta(seconds=ttl_seconds)

    def get(self, key: Any) -> Any | None:
        """
        Return the cached value if present and not expired, else None.
        """
        with self._lock:
            if key in self._cache:
                value, expiry = self._cache[key]
                if datetime.now(timezone.utc) < expiry:
                    return value
                del self._cache[key]
            return None

    def set(self, key: Any, value: Any):
        with self._lock:
            self._cache[key] = (value, datetime.now(timezone.utc) + self._ttl)

    def invalidate(self, key: Any | None = None):
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop(key, None)

    def clear(self):
        self.invalidate()
