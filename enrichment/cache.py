# enrichment/cache.py
import json
import logging
from typing import Any, Tuple

from redis.asyncio import Redis

logger = logging.getLogger("cache")
logger.setLevel(logging.INFO)

MISSING = object()


def catalog_key(isbn13: str) -> str:
    return f"catalog:{isbn13}"


def page_key(isbn13: str) -> str:
    return f"book:{isbn13}"


def lease_key(isbn13: str) -> str:
    return f"crawl-lease:{isbn13}"


def create_redis(redis_url: str) -> Redis:
    return Redis.from_url(redis_url, decode_responses=True, encoding="utf-8")


class JsonCache:
    """
    Thin JSON layer over an async Redis client.

    A stored JSON null is a real value (a remembered "not found") and is
    told apart from a miss by get_json returning MISSING. Redis errors are
    raised to the caller, which decides whether the cache is optional.
    """

    def __init__(self, redis):
        self.redis = redis

    async def get_json(self, key: str) -> Any:
        raw = await self.redis.get(key)
        if raw is None:
            return MISSING
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding unparseable cache entry {key}")
            return MISSING

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.redis.set(key, json.dumps(value, ensure_ascii=False), ex=ttl_seconds)

    async def delete(self, key: str) -> int:
        return await self.redis.delete(key)

    async def acquire_lease(self, key: str, ttl_seconds: int) -> bool:
        """Write a TTL'd marker only if none exists; True if this call won."""
        return bool(await self.redis.set(key, "1", ex=ttl_seconds, nx=True))

    async def invalidate_page(self, isbn13: str) -> Tuple[bool, int]:
        """
        Drop the cached page view for an ISBN.

        Best effort: returns (ok, deleted_count) and never raises.
        """
        try:
            deleted = await self.delete(page_key(isbn13))
        except Exception as e:
            logger.warning(f"Page cache invalidation failed for {isbn13}: {e}")
            return False, 0
        return True, deleted
