"""Redis backend (``redis.asyncio``)."""
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Optional

import redis.asyncio as aioredis

from ..conf import REDIS_URL
from ..exceptions import MissingConfig
from .base import AbstractStore

logger = logging.getLogger("redenv.storage")


class RedisStore(AbstractStore):
    """Store backed by Redis 7.4+ (field expiry needs ``HEXPIRE``)."""

    def __init__(self, client: Optional[aioredis.Redis] = None, url: Optional[str] = None):
        if client is None:
            url = url or REDIS_URL
            if not url:
                raise MissingConfig("A Redis URL is required to open the store")
            client = aioredis.from_url(url, decode_responses=True)
        self._redis = client

    @property
    def client(self) -> aioredis.Redis:
        return self._redis

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._redis.hget(key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._redis.hgetall(key) or {}

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        return await self._redis.hset(key, mapping=dict(mapping))

    async def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return await self._redis.hdel(key, *fields)

    async def hexists(self, key: str, field: str) -> bool:
        return bool(await self._redis.hexists(key, field))

    async def hexpire(self, key: str, seconds: int, *fields: str) -> None:
        await self._redis.hexpire(key, seconds, *fields)

    async def hset_with_expiry(self, key: str, mapping: Mapping[str, str], seconds: int) -> None:
        """Set the fields and their expiry in one MULTI/EXEC transaction."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=dict(mapping))
            pipe.hexpire(key, seconds, *mapping)
            await pipe.execute()

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def scan_iter(self, match: str, count: int = 100) -> AsyncIterator[str]:
        async for key in self._redis.scan_iter(match=match, count=count):
            yield key

    async def close(self) -> None:
        logger.debug("Closing Redis connection")
        await self._redis.aclose()
