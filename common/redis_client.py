"""
Redis client utilities for cache invalidation and delivery markers
"""
import logging
import redis
from typing import Iterable, Optional
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    # Cache invalidation
    def delete_keys(self, keys: Iterable[str]) -> int:
        """Delete cache keys; errors propagate so callers can retry"""
        keys = list(keys)
        if not keys:
            return 0
        deleted = self.client.delete(*keys)
        logger.info(f"Invalidated {deleted}/{len(keys)} cache keys")
        return deleted

    # Delivery markers
    def mark_once(self, marker: str, ttl_seconds: int = 86400) -> bool:
        """Set a marker if absent. Returns False when it was already set."""
        return bool(self.client.set(f"sent:{marker}", "1", nx=True, ex=ttl_seconds))

    def clear_marker(self, marker: str) -> None:
        self.client.delete(f"sent:{marker}")

