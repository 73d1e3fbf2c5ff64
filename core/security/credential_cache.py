"""Keyed in-memory cache with per-entry TTL and explicit eviction.

Used for short-lived plaintext credentials: decrypted access tokens and the
client id/secret a team submits before the OAuth redirect. Entries expire on
their own; callers evict explicitly on disconnect or refresh failure.
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Generic, Optional, TypeVar

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """Thread-safe TTL cache keyed by string."""

    def __init__(self, default_ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry[V]] = {}
        self._lock = Lock()

    def set(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            self.evict(key)
            return
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)

    def get(self, key: str) -> Optional[V]:
        """Return the value, or None if absent or expired (expired entries are dropped)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def pop(self, key: str) -> Optional[V]:
        """Return and remove a live value."""
        value = self.get(key)
        self.evict(key)
        return value

    def evict(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
