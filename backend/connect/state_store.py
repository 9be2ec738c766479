"""
OAuth state stores.

A state token is written once when the user is redirected to the platform
and consumed once by the callback. Expired tokens behave exactly like
unknown ones. The store is created by the API lifespan and injected, so
tests and single-process setups use the in-memory variant while multiple
API workers share the Redis one.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as aioredis


class StateStore(Protocol):
    async def put(self, token: str, context: dict[str, Any], ttl_seconds: int) -> None: ...

    async def pop(self, token: str) -> dict[str, Any] | None: ...


class InMemoryStateStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}

    def _purge_expired(self) -> None:
        now = self._clock()
        for token in [t for t, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[token]

    async def put(self, token: str, context: dict[str, Any], ttl_seconds: int) -> None:
        self._purge_expired()
        self._entries[token] = (self._clock() + ttl_seconds, dict(context))

    async def pop(self, token: str) -> dict[str, Any] | None:
        self._purge_expired()
        entry = self._entries.pop(token, None)
        return entry[1] if entry else None

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)


class RedisStateStore:
    """``SET EX`` on write, ``GETDEL`` on read: single use across API workers."""

    prefix = "oauth-state:"

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def put(self, token: str, context: dict[str, Any], ttl_seconds: int) -> None:
        await self.redis.set(self.prefix + token, json.dumps(context, default=str), ex=ttl_seconds)

    async def pop(self, token: str) -> dict[str, Any] | None:
        raw = await self.redis.getdel(self.prefix + token)
        if raw is None:
            return None
        return json.loads(raw)
