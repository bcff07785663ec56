"""
Cache manager with optional Redis backing.
Falls back to the in-memory cache when Redis is not configured or unreachable.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import redis

from config import settings as default_settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Key/value cache with TTL. Values must be JSON serialisable."""

    def __init__(self, redis_url: Optional[str] = None, default_ttl: Optional[int] = None,
                 max_memory_items: int = 1000, prefix: str = "library_cache"):
        self.redis_client = None
        self.default_ttl = default_ttl if default_ttl is not None else default_settings.cache_ttl
        self.max_memory_items = max_memory_items
        self.prefix = prefix
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'redis_hits': 0,
            'memory_hits': 0
        }

        if redis_url:
            self._init_redis(redis_url)
        else:
            logger.debug("No Redis URL configured, using the in-memory cache only")

    def _init_redis(self, redis_url: str) -> None:
        try:
            client = redis.from_url(
                redis_url,
                decode_responses=False,
                socket_connect_timeout=1,
                socket_timeout=1,
                retry_on_timeout=True,
                health_check_interval=30
            )
            client.ping()
            self.redis_client = client
            logger.info("Redis cache initialised")
        except redis.RedisError as e:
            logger.warning(f"Could not connect to Redis: {e}. Using the in-memory cache only.")
            self.redis_client = None

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    @staticmethod
    def _serialize_value(value: Any) -> bytes:
        return json.dumps(value, ensure_ascii=False).encode('utf-8')

    @staticmethod
    def _deserialize_value(data: bytes) -> Any:
        return json.loads(data.decode('utf-8'))

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None."""
        if self.redis_client:
            try:
                data = self.redis_client.get(self._make_key(key))
                if data is not None:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['redis_hits'] += 1
                    return self._deserialize_value(data)
            except redis.RedisError as e:
                logger.warning(f"Redis get error: {e}")

        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if datetime.now() < expires_at:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['memory_hits'] += 1
                    return json.loads(value)
                del self.memory_cache[key]

        self.cache_stats['misses'] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        serialized = self._serialize_value(value)

        if self.redis_client:
            try:
                self.redis_client.setex(self._make_key(key), ttl, serialized)
            except redis.RedisError as e:
                logger.warning(f"Redis set error: {e}")

        # Memory copies are stored serialised so callers never share mutable state
        with self.memory_cache_lock:
            self.memory_cache[key] = (serialized.decode('utf-8'), datetime.now() + timedelta(seconds=ttl))
            if len(self.memory_cache) > self.max_memory_items:
                oldest = sorted(self.memory_cache.items(), key=lambda item: item[1][1])
                for k, _ in oldest[:max(1, self.max_memory_items // 10)]:
                    self.memory_cache.pop(k, None)

    def delete(self, key: str) -> bool:
        redis_deleted = False
        if self.redis_client:
            try:
                redis_deleted = bool(self.redis_client.delete(self._make_key(key)))
            except redis.RedisError as e:
                logger.warning(f"Redis delete error: {e}")

        with self.memory_cache_lock:
            memory_deleted = self.memory_cache.pop(key, None) is not None

        return redis_deleted or memory_deleted

    def get_stats(self) -> Dict[str, Any]:
        stats = self.cache_stats.copy()
        stats['redis_available'] = self.redis_client is not None
        stats['memory_cache_size'] = len(self.memory_cache)
        total = stats['hits'] + stats['misses']
        stats['hit_ratio'] = stats['hits'] / total if total else 0.0
        return stats
