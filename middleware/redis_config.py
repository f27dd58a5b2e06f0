"""
Redis configuration and connection management.
One pooled redis.asyncio client per process, shared by the rate limiter and the audit store.
"""
from typing import Optional
import logging

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """Manage Redis connections with proper pooling."""

    _instance: Optional['RedisManager'] = None
    _redis_client: Optional[redis.Redis] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def get_client(self) -> Optional[redis.Redis]:
        """Get Redis client, creating the pool on first use. None if Redis is not configured."""
        if self._redis_client is None:
            redis_url = settings.redis_url
            if not redis_url:
                logger.warning("Redis URL not configured - shared counters disabled")
                return None

            pool = redis.ConnectionPool.from_url(
                redis_url,
                max_connections=settings.redis_max_connections,
                decode_responses=True,
                socket_connect_timeout=settings.redis_timeout,
                socket_timeout=settings.redis_timeout,
                retry_on_timeout=True,
                health_check_interval=30
            )
            # Connection errors surface on first command, where callers decide how to degrade
            self._redis_client = redis.Redis(connection_pool=pool)
            logger.info("✅ Redis connection pool created")

        return self._redis_client

    async def close(self):
        """Close Redis connection."""
        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None


# Global instance
redis_manager = RedisManager()


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client for dependency injection."""
    return await redis_manager.get_client()
