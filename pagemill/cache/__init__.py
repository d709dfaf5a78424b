"""In-memory caching: TTL stores and the cache/rate-limit service."""

from pagemill.cache.service import CacheService, RateLimitStatus, cache_key, normalize_url
from pagemill.cache.store import CacheEntry, TTLStore

__all__ = [
    "CacheEntry",
    "CacheService",
    "RateLimitStatus",
    "TTLStore",
    "cache_key",
    "normalize_url",
]
