"""
Redis cache utility for published quiz snapshots
"""
import hashlib
import json
import logging
from typing import Any, Optional

import redis

from training_engine.config import settings

logger = logging.getLogger(__name__)


class CacheService:
    """Redis-based read-through cache; every call is a no-op when Redis is unavailable"""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_client = None
        if not redis_url:
            logger.info("No REDIS_URL configured. Caching disabled.")
            return

        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5
            )
            # Test connection
            self.redis_client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {str(e)}. Caching disabled.")
            self.redis_client = None

    @property
    def enabled(self) -> bool:
        return self.redis_client is not None

    def generate_snapshot_key(self, quiz_id: str) -> str:
        """
        Generate cache key for the published snapshot of a quiz

        Published quizzes are immutable, so the quiz id alone identifies
        the snapshot.

        Args:
            quiz_id: Quiz UUID

        Returns:
            Cache key string
        """
        return f"quiz_snapshot:{quiz_id}"

    def generate_snapshot_hash(self, payload: Any) -> str:
        """
        Generate content hash for a snapshot payload

        Same content → same hash, regardless of key order
        """
        key_string = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(key_string.encode()).hexdigest()

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache

        Args:
            key: Cache key

        Returns:
            Cached value or None
        """
        if not self.redis_client:
            return None

        try:
            value = self.redis_client.get(key)
            if value:
                logger.info(f"Cache hit: {key}")
                return json.loads(value)
            logger.info(f"Cache miss: {key}")
            return None
        except redis.RedisError as e:
            logger.error(f"Cache get error: {str(e)}")
            return None

    def set(self, key: str, value: Any, ttl: int = None) -> bool:
        """
        Set value in cache

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl: Time to live in seconds (default from settings)

        Returns:
            Success status
        """
        if not self.redis_client:
            return False

        try:
            ttl = ttl or settings.SNAPSHOT_CACHE_TTL
            serialized = json.dumps(value, default=str)
            self.redis_client.setex(key, ttl, serialized)
            logger.info(f"Cache set: {key} (TTL: {ttl}s)")
            return True
        except redis.RedisError as e:
            logger.error(f"Cache set error: {str(e)}")
            return False

    def clear_quiz_cache(self, quiz_id: str) -> bool:
        """Clear the cached snapshot of a quiz"""
        if not self.redis_client:
            return False

        try:
            self.redis_client.delete(self.generate_snapshot_key(quiz_id))
            logger.info(f"Cleared cached snapshot for quiz {quiz_id}")
            return True
        except redis.RedisError as e:
            logger.error(f"Cache clear error: {str(e)}")
            return False


# Global instance
cache_service = CacheService(settings.REDIS_URL)
