"""Redis advisory lock per order, narrowing the duplicate-delivery window.

Contract:
- Key pattern: fulfill:lock:{order_id}, set with SET NX EX (lock_ttl_seconds)
- Lock is released after fulfillment; the TTL bounds a crashed holder
- If Redis is down, fails open (fulfillment proceeds unlocked)
- Disabled entirely when no redis_url is configured
"""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from autodelivery.config import Settings

logger = logging.getLogger(__name__)

_KEY_PREFIX = "fulfill:lock"


class OrderLock:
    """Best-effort mutual exclusion for fulfilling one order."""

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 120) -> None:
        self._redis = client
        self._ttl = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> OrderLock | None:
        if not settings.redis_url:
            return None
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        return cls(client, ttl_seconds=settings.lock_ttl_seconds)

    @staticmethod
    def key(order_id: str) -> str:
        return f"{_KEY_PREFIX}:{order_id}"

    async def acquire(self, order_id: str) -> str | None:
        """Try to take the lock. Returns the holder token, "" if Redis is down, None if held."""
        holder = secrets.token_hex(8)
        try:
            was_set = await self._redis.set(self.key(order_id), holder, nx=True, ex=self._ttl)
        except Exception:
            logger.warning(
                "Redis unavailable for order lock, proceeding unlocked: %s",
                order_id,
                exc_info=True,
            )
            return ""
        if not was_set:
            logger.info("Order %s is locked by another delivery", order_id)
            return None
        return holder

    async def release(self, order_id: str, holder: str) -> None:
        if not holder:
            return
        key = self.key(order_id)
        try:
            if await self._redis.get(key) == holder:
                await self._redis.delete(key)
        except Exception:
            logger.warning("Failed to release order lock: %s", order_id, exc_info=True)

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[bool]:
        """Yields True when the caller may fulfill, False when another delivery holds it."""
        holder = await self.acquire(order_id)
        if holder is None:
            yield False
            return
        try:
            yield True
        finally:
            await self.release(order_id, holder)

    async def close(self) -> None:
        await self._redis.aclose()
