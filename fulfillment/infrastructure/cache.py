import json
import logging
from typing import Any, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class AvailabilityCache(Protocol):
    async def get(self, key: str) -> list[dict[str, Any]] | None: ...

    async def set(self, key: str, value: list[dict[str, Any]], ttl_seconds: int) -> None: ...

    async def invalidate_service(self, service_id: str) -> None: ...


def availability_key(service_id: str, day: str, provider_id: str | None) -> str:
    return f"availability:{service_id}:{day}:{provider_id or 'any'}"


class RedisAvailabilityCache:
    """Availability views in Redis. A failing cache degrades to a miss, never to an error."""

    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def get(self, key: str) -> list[dict[str, Any]] | None:
        try:
            raw = await self._redis.get(key)
        except aioredis.RedisError as e:
            logger.warning(f"Availability cache read failed for {key}: {e}")
            return None

        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: list[dict[str, Any]], ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, json.dumps(value), ex=ttl_seconds)
        except aioredis.RedisError as e:
            logger.warning(f"Availability cache write failed for {key}: {e}")

    async def invalidate_service(self, service_id: str) -> None:
        pattern = f"availability:{service_id}:*"
        try:
            keys = [key async for key in self._redis.scan_iter(match=pattern)]
            if keys:
                await self._redis.delete(*keys)
        except aioredis.RedisError as e:
            # Stale entries expire with their TTL
            logger.warning(f"Availability cache invalidation failed for {pattern}: {e}")
            return
        logger.debug(f"Invalidated {len(keys)} availability entries for service {service_id}")
