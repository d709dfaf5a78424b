"""In-memory TTL key/value store with LRU capping.

One :class:`TTLStore` backs each cache tier.  All dictionary work happens
under a single per-store :class:`threading.Lock`; values are never computed
while the lock is held.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl_seconds: float
    last_accessed_at: float

    def expired(self, now: float) -> bool:
        return now >= self.created_at + self.ttl_seconds


def estimate_size(value: Any) -> int:
    """Rough serialised size of *value* in bytes."""
    if value is None:
        return 0
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(repr(value))


class TTLStore:
    """Thread-safe TTL store.

    Expiry is checked lazily on every read and eagerly by :meth:`sweep`.
    When ``max_entries`` is set, inserting past the cap evicts the least
    recently accessed entries.
    """

    def __init__(
        self,
        name: str,
        default_ttl: float,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(now):
                del self._entries[key]
                entry = None
                expired = True
            else:
                expired = False
            if entry is None:
                self.misses += 1
                value = _MISSING
            else:
                self.hits += 1
                entry.last_accessed_at = now
                value = entry.value
        if expired:
            logger.debug("[%s] expired %s", self.name, key)
        return default if value is _MISSING else value

    def peek(self, key: str, default: Any = None) -> Any:
        """Like :meth:`get` without touching hit/miss counters or recency."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(now):
                return default
            return entry.value

    def has(self, key: str) -> bool:
        return self.peek(key, _MISSING) is not _MISSING

    def keys(self) -> List[str]:
        now = self._clock()
        with self._lock:
            return [key for key, entry in self._entries.items() if not entry.expired(now)]

    def __len__(self) -> int:
        return len(self.keys())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            evicted = self._put(key, value, ttl, now)
        self._log_write(key, ttl, evicted)
        return True

    def update(self, key: str, fn: Callable[[Any], Tuple[Any, Any]], ttl: Optional[float] = None) -> Any:
        """Atomically replace the value under *key* with ``fn(current)[0]``.

        *fn* receives the live value (``None`` when missing or expired) and
        returns ``(new_value, result)``; *result* is handed back to the
        caller.  The read and the write happen under one lock acquisition,
        so concurrent updates of the same key never lose a write.
        """
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            entry = self._entries.get(key)
            current = None if entry is None or entry.expired(now) else entry.value
            new_value, result = fn(current)
            evicted = self._put(key, new_value, ttl, now)
        self._log_write(key, ttl, evicted)
        return result

    def _put(self, key: str, value: Any, ttl: float, now: float) -> List[str]:
        # Caller holds self._lock.
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            ttl_seconds=ttl,
            last_accessed_at=now,
        )
        evicted: List[str] = []
        if self.max_entries is not None and len(self._entries) > self.max_entries:
            overflow = len(self._entries) - self.max_entries
            oldest = sorted(self._entries.values(), key=lambda e: e.last_accessed_at)[:overflow]
            for entry in oldest:
                del self._entries[entry.key]
                evicted.append(entry.key)
        return evicted

    def _log_write(self, key: str, ttl: float, evicted: List[str]) -> None:
        logger.debug("[%s] set %s (ttl=%ss)", self.name, key, ttl)
        for key_ in evicted:
            logger.debug("[%s] evicted %s", self.name, key_)

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("[%s] invalidated %s", self.name, key)
        return removed

    def sweep(self) -> int:
        """Remove every expired entry; return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("[%s] swept %d expired entries", self.name, len(expired))
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        return count

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def size_bytes(self) -> int:
        with self._lock:
            values = [entry.value for entry in self._entries.values()]
        return sum(estimate_size(value) for value in values)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "keys": len(self),
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": self.hit_rate,
            "memoryUsage": self.size_bytes(),
        }
