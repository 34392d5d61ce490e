"""
Redis read-through cache with per-entity invalidation.

The cache is advisory: every failure is logged and treated as a miss, and
balances used inside a transfer are always read from the database.
"""
import hashlib
import json
import logging
from typing import Any, Callable, Optional

import redis

from .settings import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache"

class RedisCache:
    """Read-through cache keyed by (entity, operation, argument hash)"""

    def __init__(self, client: Optional[redis.Redis] = None, enabled: bool = None, ttl_seconds: int = None):
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self.ttl_seconds = ttl_seconds or settings.cache_ttl_seconds
        self.client = client
        if self.client is None and self.enabled:
            self.client = redis.Redis.from_url(settings.redis_url, decode_responses=True)

    @staticmethod
    def make_key(entity: str, operation: str, *args: Any) -> str:
        digest = hashlib.sha256(json.dumps(args, sort_keys=True, default=str).encode()).hexdigest()[:32]
        return f"{KEY_PREFIX}:{entity}:{operation}:{digest}"

    def ping(self) -> bool:
        """Check Redis connectivity"""
        if not self.enabled:
            return False
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            value = self.client.get(key)
            return json.loads(value) if value is not None else None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = None) -> bool:
        if not self.enabled:
            return False
        try:
            payload = json.dumps(value, default=str)
            return bool(self.client.setex(key, ttl_seconds or self.ttl_seconds, payload))
        except (redis.RedisError, TypeError) as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    def fetch(self, entity: str, operation: str, args: tuple, loader: Callable[[], Any], ttl_seconds: int = None) -> Any:
        """Return the cached value, or call ``loader`` and cache its result"""
        key = self.make_key(entity, operation, *args)
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, *entities: str) -> int:
        """Drop every cached read for the given entity types"""
        if not self.enabled:
            return 0
        removed = 0
        for entity in entities:
            try:
                keys = list(self.client.scan_iter(match=f"{KEY_PREFIX}:{entity}:*"))
                if keys:
                    removed += self.client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Cache invalidation failed for {entity}: {e}")
        return removed

# Global cache instance
redis_cache = RedisCache()
