"""
Run locks: at most one sync per (channel, entity kind).

A second run for the same pair is rejected with ``SyncAlreadyRunning``,
never queued. ``InMemorySyncLocks`` covers a single API process;
``RedisSyncLocks`` covers every Celery worker sharing the broker.
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

import redis.asyncio as aioredis
import structlog

from core.errors import SyncAlreadyRunning
from routing.models import EntityKind

logger = structlog.get_logger()

# Deletes the key only if we still own it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lock_key(channel_id: str, entity_kind: EntityKind) -> str:
    return f"sync-lock:{channel_id}:{entity_kind.value}"


class SyncLocks(Protocol):
    async def acquire(self, key: str) -> str | None: ...

    async def release(self, key: str, token: str) -> None: ...


class InMemorySyncLocks:
    def __init__(self):
        self._held: dict[str, str] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, key: str) -> str | None:
        async with self._mutex:
            if key in self._held:
                return None
            token = secrets.token_hex(8)
            self._held[key] = token
            return token

    async def release(self, key: str, token: str) -> None:
        async with self._mutex:
            if self._held.get(key) == token:
                del self._held[key]

    def is_held(self, key: str) -> bool:
        return key in self._held


class RedisSyncLocks:
    """``SET NX EX`` lock; the TTL frees locks left behind by a killed worker."""

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 1800):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def acquire(self, key: str) -> str | None:
        token = secrets.token_hex(8)
        acquired = await self.redis.set(key, token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None

    async def release(self, key: str, token: str) -> None:
        await self.redis.eval(_RELEASE_SCRIPT, 1, key, token)


@asynccontextmanager
async def hold_sync_lock(locks: SyncLocks, channel_id: str, entity_kind: EntityKind) -> AsyncIterator[str]:
    """Hold the run lock for the block; released on any exit, cancellation included."""
    key = lock_key(channel_id, entity_kind)
    token = await locks.acquire(key)
    if token is None:
        logger.info("sync.rejected_already_running", integration_id=channel_id, entity_kind=entity_kind.value)
        raise SyncAlreadyRunning(
            f"A {entity_kind.value} sync is already running for integration {channel_id}",
            reasons=["sync_already_running"],
        )
    try:
        yield token
    finally:
        # Shielded so a cancelled task still frees the lock
        await asyncio.shield(locks.release(key, token))
