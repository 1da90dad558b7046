"""
Redis Cache Client

Key-value cache on redis.asyncio. Every operation is best-effort: a cache
failure is logged and reported as a miss (or ``False``), never raised, so the
ledger keeps working against the database when Redis is unavailable.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class RedisCache:
    """Best-effort JSON cache backed by Redis"""

    def __init__(self, url: Optional[str] = None, config: Optional[InfraConfig] = None):
        config = config or InfraConfig.from_env()
        self.url = url or config.redis_url
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def get_json(self, key: str) -> Optional[Any]:
        """Get a cached JSON value, or None on miss/failure"""
        try:
            cached = await self.client.get(key)
            return json.loads(cached) if cached else None
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store a JSON-serializable value with a TTL"""
        try:
            await self.client.setex(key, ttl_seconds, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def delete(self, *keys: str) -> bool:
        """Invalidate one or more keys"""
        if not keys:
            return True
        try:
            await self.client.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {', '.join(keys)}: {e}")
            return False

    async def incr(self, key: str, ttl_seconds: int) -> Optional[int]:
        """Increment a counter and refresh its TTL; None on failure"""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl_seconds)
                value, _ = await pipe.execute()
            return int(value)
        except Exception as e:
            logger.warning(f"Cache counter increment failed for {key}: {e}")
            return None

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception:
            return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis cache connection closed")


__all__ = ["RedisCache"]
