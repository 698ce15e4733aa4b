"""
Key/value store for rate-limit windows, penalty counters, blocked IPs and
security incident counters. Uses Redis when REDIS_URL is configured and an
in-memory TTL store otherwise.
"""
from typing import Optional, Any
from datetime import datetime, timedelta
import json
import logging

logger = logging.getLogger(__name__)


class SimpleCache:
    """In-memory cache with TTL support and size limit."""

    MAX_ENTRIES = 10000

    def __init__(self):
        self._cache: dict = {}
        self._expiry: dict = {}

    def _evict_expired(self):
        now = datetime.now()
        expired = [k for k, exp in self._expiry.items() if exp <= now]
        for k in expired:
            self._cache.pop(k, None)
            self._expiry.pop(k, None)

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        if key in self._cache:
            if datetime.now() < self._expiry.get(key, datetime.min):
                return self._cache[key]
            del self._cache[key]
            del self._expiry[key]
        return None

    def set(self, key: str, value: Any, ttl_seconds: int = 300):
        """Set value in cache with TTL."""
        if len(self._cache) >= self.MAX_ENTRIES:
            self._evict_expired()
        if len(self._cache) >= self.MAX_ENTRIES:
            oldest_keys = sorted(self._expiry, key=self._expiry.get)[:100]
            for k in oldest_keys:
                self._cache.pop(k, None)
                self._expiry.pop(k, None)
        self._cache[key] = value
        self._expiry[key] = datetime.now() + timedelta(seconds=ttl_seconds)

    def ttl(self, key: str) -> int:
        """Seconds until the key expires, 0 when absent."""
        if self.get(key) is None:
            return 0
        return max(0, int((self._expiry[key] - datetime.now()).total_seconds()))

    def delete(self, key: str):
        self._cache.pop(key, None)
        self._expiry.pop(key, None)

    def clear(self):
        self._cache.clear()
        self._expiry.clear()


class RedisCacheClient:
    """Redis-backed cache with in-memory fallback."""

    def __init__(self):
        self._redis = None
        self._fallback = SimpleCache()

    def initialize(self, redis_url: str | None = None):
        if redis_url:
            try:
                import redis
                self._redis = redis.from_url(
                    redis_url, socket_connect_timeout=2, decode_responses=True,
                )
                self._redis.ping()
                logger.info("Redis cache connected")
            except Exception as e:
                logger.warning(f"Redis unavailable, using memory cache: {e}")
                self._redis = None

    @property
    def backend(self) -> str:
        return "redis" if self._redis else "memory"

    def get(self, key: str) -> Any | None:
        try:
            if self._redis:
                val = self._redis.get(key)
                return json.loads(val) if val else None
        except Exception as e:
            logger.debug(f"Redis get failed for {key}: {e}")
        return self._fallback.get(key)

    def set(self, key: str, value: Any, ttl_seconds: int = 300):
        serialized = json.dumps(value, default=str)
        try:
            if self._redis:
                self._redis.setex(key, max(1, int(ttl_seconds)), serialized)
                return
        except Exception as e:
            logger.debug(f"Redis set failed for {key}: {e}")
        self._fallback.set(key, value, ttl_seconds)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def ttl(self, key: str) -> int:
        try:
            if self._redis:
                return max(0, int(self._redis.ttl(key)))
        except Exception as e:
            logger.debug(f"Redis ttl failed for {key}: {e}")
        return self._fallback.ttl(key)

    def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, keeping the TTL of the first write."""
        current = self.get(key)
        if current is None:
            self.set(key, 1, ttl_seconds)
            return 1
        remaining = self.ttl(key) or ttl_seconds
        value = int(current) + 1
        self.set(key, value, remaining)
        return value

    def delete(self, key: str):
        try:
            if self._redis:
                self._redis.delete(key)
                return
        except Exception as e:
            logger.debug(f"Redis delete failed for {key}: {e}")
        self._fallback.delete(key)

    def clear(self):
        """Drop every in-memory key (tests and local runs)."""
        self._fallback.clear()


redis_cache = RedisCacheClient()
