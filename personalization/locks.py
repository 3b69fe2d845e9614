"""
Keyed locks.

Writers serialise on a string key ("taxonomy:structure", "interest:{id}",
"user:{id}", "post:{id}") so two workers never mutate the same node, taste
graph or classification at once, while writes on different keys proceed in
parallel.

  KeyedLocks       — asyncio.Lock registry, correct within one process
  RedisKeyedLocks  — redis.asyncio Lock, correct across replicas
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from personalization.config import Settings

logger = logging.getLogger(__name__)


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle entries so the registry stays bounded by live keys
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)

    async def close(self) -> None:
        self._locks.clear()
        self._waiters.clear()


class RedisKeyedLocks:
    def __init__(self, redis: aioredis.Redis, timeout: float) -> None:
        self._redis = redis
        self._timeout = timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        # `timeout` bounds how long a crashed holder can keep the key
        async with self._redis.lock(f"lock:{key}", timeout=self._timeout):
            yield

    async def close(self) -> None:
        await self._redis.aclose()


async def create_locks(settings: Settings) -> KeyedLocks | RedisKeyedLocks:
    if not settings.use_redis_locks:
        return KeyedLocks()

    redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await redis.ping()
    logger.info("Redis locks at %s:%s", settings.redis_host, settings.redis_port)
    return RedisKeyedLocks(redis, settings.lock_timeout_seconds)
