import logging
import uuid
from typing import Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

# Delete the key only while it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockCoordinator(Protocol):
    async def try_acquire(self, key: str, ttl_seconds: int) -> str | None: ...

    async def release(self, key: str, token: str) -> None: ...


class RedisLockCoordinator:
    """
    Time-bounded exclusive leases on Redis keys (``SET NX EX``).

    ``try_acquire`` returns an owner token, or None when the lease is held.
    ``release`` is a compare-and-delete on that token, so a caller whose lease
    already expired never removes someone else's.
    """

    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def try_acquire(self, key: str, ttl_seconds: int) -> str | None:
        token = uuid.uuid4().hex
        acquired = await self._redis.set(key, token, nx=True, ex=ttl_seconds)
        return token if acquired else None

    async def release(self, key: str, token: str) -> None:
        try:
            released = await self._redis.eval(RELEASE_SCRIPT, 1, key, token)
        except aioredis.RedisError as e:
            # The lease expires on its own
            logger.warning(f"Failed to release lock {key}: {e}")
            return

        if not released:
            logger.warning(f"Lock {key} expired or changed owner before release")


def booking_lock_key(service_id: str, provider_id: str | None, start_at_iso: str) -> str:
    return f"booking:lock:{service_id}:{provider_id or 'any'}:{start_at_iso}"
