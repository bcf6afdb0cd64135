"""
Redis cache: short-lived profile reads and per-user rate limits.
Every call degrades to a miss / allow when Redis is not connected.
"""
import json
import logging
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from . import core

logger = logging.getLogger(__name__)


class CacheManager:
    def __init__(self, default_ttl: int = 3600):
        self.default_ttl = default_ttl

    def _make_key(self, key: str, prefix: str = "") -> str:
        """Generate cache key with prefix"""
        if prefix:
            return f"{prefix}:{key}"
        return key

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, prefix: str = "") -> bool:
        if not core.REDIS:
            return False

        cache_key = self._make_key(key, prefix)
        if isinstance(value, (dict, list)):
            value = json.dumps(value)

        try:
            await core.REDIS.setex(cache_key, ttl or self.default_ttl, value)
            return True
        except (RedisError, OSError) as e:
            logger.error(f"Cache set failed for key {cache_key}: {e}")
            return False

    async def get(self, key: str, prefix: str = "") -> Optional[Any]:
        if not core.REDIS:
            return None

        cache_key = self._make_key(key, prefix)
        try:
            value = await core.REDIS.get(cache_key)
        except (RedisError, OSError) as e:
            logger.error(f"Cache get failed for key {cache_key}: {e}")
            return None
        if value is None:
            return None

        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value.decode() if isinstance(value, bytes) else value

    async def delete(self, key: str, prefix: str = "") -> bool:
        if not core.REDIS:
            return False

        cache_key = self._make_key(key, prefix)
        try:
            return await core.REDIS.delete(cache_key) > 0
        except (RedisError, OSError) as e:
            logger.error(f"Cache delete failed for key {cache_key}: {e}")
            return False

    async def increment(self, key: str, amount: int = 1, prefix: str = "", ttl: Optional[int] = None) -> Optional[int]:
        """Increment atomically; ttl is applied when the key is created"""
        if not core.REDIS:
            return None

        cache_key = self._make_key(key, prefix)
        try:
            value = await core.REDIS.incrby(cache_key, amount)
            if ttl and value == amount:
                await core.REDIS.expire(cache_key, ttl)
            return value
        except (RedisError, OSError) as e:
            logger.error(f"Cache increment failed for key {cache_key}: {e}")
            return None


cache = CacheManager()


async def cache_profile(user_id: int, profile: Dict, ttl: int = 300):
    await cache.set(str(user_id), profile, ttl, "profile")

async def get_cached_profile(user_id: int) -> Optional[Dict]:
    return await cache.get(str(user_id), "profile")

async def invalidate_profile(user_id: int):
    await cache.delete(str(user_id), "profile")

# Rate limiting
async def check_rate_limit(user_id: int, action: str, limit: int = 100, window: int = 3600) -> bool:
    """True while the user has done action fewer than limit times in the current window"""
    current = await cache.increment(f"{user_id}:{action}", 1, "rate", ttl=window)
    if current is None:
        return True
    return current <= limit
