"""
Key-value clients backing the progress cache.

Production code talks to Redis; tests and single-process tools use
:class:`InMemoryKeyValue`, which implements the same small subset of the
Redis API (``get``/``setex``/``delete``/``expire``/``ttl``).  Callers receive a
client explicitly instead of reaching for a module-level singleton.

Usage::

    from docvoice.utils.cache import create_cache_client

    client = create_cache_client(settings.redis_url)
    client.setex("key", 60, "value")
"""

import logging
import threading
import time
from typing import Optional, Protocol

import redis

logger = logging.getLogger(__name__)


class KeyValueClient(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def setex(self, key: str, ttl: int, value: str) -> object: ...

    def delete(self, *keys: str) -> int: ...

    def expire(self, key: str, ttl: int) -> bool: ...


class InMemoryKeyValue:
    """Thread-safe in-process key-value store with per-key expiry."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str) -> bool:
        with self._lock:
            self._data[key] = (value, None)
        return True

    def setex(self, key: str, ttl: int, value: str) -> bool:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + ttl)
            return True

    def ttl(self, key: str) -> int:
        """Seconds to live, ``-1`` for no expiry, ``-2`` when missing (Redis semantics)."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return int(round(entry[1] - self._clock()))


def create_cache_client(redis_url: str) -> redis.Redis:
    """Build a Redis client that returns ``str`` values.

    The connection is opened lazily on first command, so constructing the
    client never blocks on an unreachable server.
    """
    return redis.from_url(redis_url, socket_connect_timeout=2, decode_responses=True)
