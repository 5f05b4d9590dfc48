"""Async Redis client used to mirror live updates to other processes."""

from __future__ import annotations

import logging
import os

from redis.asyncio import ConnectionPool, Redis

from .config import settings
from .events import LiveUpdate

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", settings.redis_url)

_pool: ConnectionPool | None = None


def get_redis_client() -> Redis:
    """Get an async Redis client from the shared pool."""
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(REDIS_URL, max_connections=20, decode_responses=True)
    return Redis(connection_pool=_pool)


def redis_channel(channel: str) -> str:
    return f"channel:{channel}"


class RedisMirror:
    """Live update handler that republishes every update on Redis Pub/Sub."""

    def __init__(self, client: Redis | None = None) -> None:
        self.client = client or get_redis_client()

    async def __call__(self, update: LiveUpdate) -> None:
        try:
            await self.client.publish(redis_channel(update.channel), update.to_json())
        except Exception as exc:
            logger.warning("Redis publish failed: %s", exc)
