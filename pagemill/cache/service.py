"""Cache service: content, metadata and rate-limit tiers over :class:`TTLStore`.

Content entries are keyed by a SHA-256 of the normalised URL plus the
whitelisted fetch options, so equivalent requests share one entry.  Cache
failures never reach the caller: they are logged and degrade to a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import platform
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pagemill.cache.store import TTLStore, estimate_size
from pagemill.config import FetchOptions, Settings
from pagemill.errors import CacheError

logger = logging.getLogger(__name__)

CONTENT_PREFIX = "url:"
METADATA_PREFIX = "meta:"
RATE_PREFIX = "rate:"


@dataclass(frozen=True)
class RateLimitStatus:
    is_limited: bool
    request_count: int
    limit: int
    remaining: int
    reset_time: int
    retry_after_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isLimited": self.is_limited,
            "requestCount": self.request_count,
            "limit": self.limit,
            "remainingRequests": self.remaining,
            "resetTime": self.reset_time,
            "retryAfter": self.retry_after_seconds,
        }


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def normalize_url(url: str) -> str:
    """Drop the fragment, sort query parameters and lower-case the URL."""
    try:
        parts = urlsplit(url)
        query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, "")).lower()
    except ValueError:
        return url.lower()


def _digest(url: str, options: Optional[FetchOptions], extra: Optional[Dict[str, Any]] = None) -> str:
    fields = (options or FetchOptions()).cache_fields()
    payload: Dict[str, Any] = {
        "url": normalize_url(url),
        "options": {name: value for name, value in fields.items() if value is not None},
    }
    if extra:
        payload["extra"] = extra
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def cache_key(url: str, options: Optional[FetchOptions] = None) -> str:
    """``url:`` + SHA-256 over the normalised URL and whitelisted options.

    Options left at ``None`` are omitted so an explicit ``None`` and a
    missing field hash identically.
    """
    return CONTENT_PREFIX + _digest(url, options)


def variant_key(kind: str, url: str, options: Optional[FetchOptions] = None, **extra: Any) -> str:
    """``<kind>:`` + the :func:`cache_key` digest extended with *extra*.

    Used for metadata entries whose payload also depends on options beyond
    the fetch whitelist, e.g. ``variant_key("sitemap", url, fetch, discover=...)``.
    """
    return "%s:%s" % (kind, _digest(url, options, extra))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class CacheService:
    """Three independent TTL stores plus the sliding-window rate limiter."""

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        ttl = settings.cache_ttl_seconds
        self.content = TTLStore(
            "content", ttl, max_entries=settings.content_cache_max_entries, clock=clock
        )
        self.metadata = TTLStore(
            "metadata", ttl * 2, max_entries=settings.metadata_cache_max_entries, clock=clock
        )
        self.rate_limit = TTLStore(
            "rate_limit", math.ceil(settings.rate_limit_window_ms / 1000), clock=clock
        )
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------
    def cache_content(
        self,
        url: str,
        value: Any,
        options: Optional[FetchOptions] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        try:
            key = cache_key(url, options)
            ttl = ttl or self.settings.cache_ttl_seconds
            wrapped = {
                "value": value,
                "cached": {
                    "timestamp": int(self._clock() * 1000),
                    "ttl": ttl,
                    "url": url,
                    "size": estimate_size(value),
                },
            }
            self.content.set(key, wrapped, ttl)
            logger.debug("[CACHE] Stored content for %s", url)
            return True
        except Exception as exc:  # noqa: BLE001
            self._degrade("cache_content", url, exc)
            return False

    def get_content(self, url: str, options: Optional[FetchOptions] = None) -> Optional[Any]:
        try:
            wrapped = self.content.get(cache_key(url, options))
        except Exception as exc:  # noqa: BLE001
            self._degrade("get_content", url, exc)
            return None
        if wrapped is None:
            logger.debug("[CACHE] Miss for %s", url)
            return None
        wrapped["cached"]["lastAccessed"] = int(self._clock() * 1000)
        logger.debug("[CACHE] Hit for %s", url)
        return wrapped["value"]

    def has_content(self, url: str, options: Optional[FetchOptions] = None) -> bool:
        try:
            return self.content.has(cache_key(url, options))
        except Exception as exc:  # noqa: BLE001
            self._degrade("has_content", url, exc)
            return False

    def invalidate(self, url: str, options: Optional[FetchOptions] = None) -> bool:
        try:
            return self.content.delete(cache_key(url, options))
        except Exception as exc:  # noqa: BLE001
            self._degrade("invalidate", url, exc)
            return False

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    def cache_metadata(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            self.metadata.set(METADATA_PREFIX + key, value, ttl or self.settings.cache_ttl_seconds * 2)
            return True
        except Exception as exc:  # noqa: BLE001
            self._degrade("cache_metadata", key, exc)
            return False

    def get_metadata(self, key: str) -> Optional[Any]:
        try:
            return self.metadata.get(METADATA_PREFIX + key)
        except Exception as exc:  # noqa: BLE001
            self._degrade("get_metadata", key, exc)
            return None

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------
    def check_rate_limit(
        self,
        identifier: str,
        limit: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> RateLimitStatus:
        """Sliding-window check; a permitted request is recorded immediately.

        Timestamps older than ``now - window_ms`` are pruned before counting.
        When the retained count has reached *limit* the request is rejected
        and ``retry_after_seconds`` is derived from the oldest timestamp.
        """
        limit = limit or self.settings.rate_limit_max_requests
        window_ms = window_ms or self.settings.rate_limit_window_ms
        key = RATE_PREFIX + identifier
        now = int(self._clock() * 1000)

        def record(current):
            history = [ts for ts in (current or []) if ts > now - window_ms]
            limited = len(history) >= limit
            if not limited:
                history.append(now)
            return history, (history, limited)

        try:
            history, is_limited = self.rate_limit.update(key, record, math.ceil(window_ms / 1000))
        except Exception as exc:  # noqa: BLE001
            self._degrade("check_rate_limit", identifier, exc)
            return RateLimitStatus(False, 0, limit, limit, now + window_ms, 0)

        oldest = min(history) if history else now
        reset_time = oldest + window_ms
        retry_after = math.ceil((reset_time - now) / 1000) if is_limited else 0
        if is_limited:
            logger.info("[RATE] %s limited (%d/%d), retry in %ss", identifier, len(history), limit, retry_after)
        return RateLimitStatus(
            is_limited=is_limited,
            request_count=len(history),
            limit=limit,
            remaining=max(0, limit - len(history)),
            reset_time=reset_time,
            retry_after_seconds=retry_after,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------
    def cleanup(self) -> int:
        """Sweep every store; return the number of expired entries removed."""
        removed = 0
        for store in (self.content, self.metadata, self.rate_limit):
            try:
                removed += store.sweep()
            except Exception as exc:  # noqa: BLE001
                self._degrade("cleanup", store.name, exc)
        if removed:
            logger.info("[CACHE] Cleanup removed %d expired entries", removed)
        return removed

    def clear_all(self) -> Dict[str, int]:
        cleared = {
            "content": self.content.clear(),
            "metadata": self.metadata.clear(),
            "rateLimit": self.rate_limit.clear(),
        }
        logger.info("[CACHE] Cleared all stores: %s", cleared)
        return cleared

    def memory_usage(self) -> int:
        return sum(store.size_bytes() for store in (self.content, self.metadata, self.rate_limit))

    def stats(self) -> Dict[str, Any]:
        return {
            "content": self.content.stats(),
            "metadata": self.metadata.stats(),
            "rateLimit": {
                "keys": len(self.rate_limit),
                "hits": self.rate_limit.hits,
                "misses": self.rate_limit.misses,
            },
            "system": {
                "pid": os.getpid(),
                "python": platform.python_version(),
                "platform": platform.system().lower(),
            },
        }

    def health(self) -> Dict[str, Any]:
        usage = self.memory_usage()
        threshold = self.settings.memory_warning_bytes
        return {
            "status": "warning" if usage > threshold else "healthy",
            "memoryUsageBytes": usage,
            "memoryThreshold": threshold,
            "perStoreKeyCounts": {
                "content": len(self.content),
                "metadata": len(self.metadata),
                "rateLimit": len(self.rate_limit),
            },
            "hitRates": {
                "content": self.content.hit_rate,
                "metadata": self.metadata.hit_rate,
            },
        }

    # ------------------------------------------------------------------
    # Periodic sweeper
    # ------------------------------------------------------------------
    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="pagemill-cache-sweeper", daemon=True
        )
        self._sweeper.start()
        logger.debug("[CACHE] Sweeper started (every %ss)", self.settings.cache_sweep_interval_seconds)

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_sweeper.wait(self.settings.cache_sweep_interval_seconds):
            self.cleanup()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _degrade(self, operation: str, subject: str, exc: Exception) -> None:
        error = exc if isinstance(exc, CacheError) else CacheError(f"{operation} failed: {exc}")
        logger.warning("[CACHE] %s for %s degraded to miss: %s", operation, subject, error.message)
