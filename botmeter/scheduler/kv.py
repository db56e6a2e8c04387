"""
Key-value store used for schedule bookkeeping.
"""

from typing import Protocol

import redis.asyncio as aioredis

from botmeter.config import settings


class KeyValueStore(Protocol):
    """The subset of the redis.asyncio client the scheduler relies on."""

    async def get(self, name: str) -> str | None:
        ...

    async def set(self, name: str, value: str, ex: int | None = None) -> bool | None:
        ...

    async def delete(self, *names: str) -> int:
        ...

    async def keys(self, pattern: str = "*") -> list[str]:
        ...


def create_redis_client(redis_url: str | None = None) -> aioredis.Redis:
    """Build an asyncio Redis client returning str values."""
    return aioredis.Redis.from_url(
        redis_url or settings.redis_url,
        decode_responses=True,
        max_connections=settings.redis_max_connections,
    )
