"""
Sync progress events.

The pipeline reports stage changes to an observer. The Redis publisher
fans them out to the ``/ws/sync`` WebSocket so the dashboard can show
"fetching page 3" while a Celery worker does the work.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis


@dataclass
class SyncEvent:
    integration_id: str
    entity_kind: str
    stage: str  # starting | fetching-page N | merging-page N | done | failed | cancelled
    page: int = 0
    records_processed: int = 0
    detail: str | None = None
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ProgressObserver = Callable[[SyncEvent], Awaitable[None]]


def progress_channel(account_id: str) -> str:
    return f"sync-progress:{account_id}"


class RedisProgressPublisher:
    """Observer that publishes every event on the account's pub/sub channel."""

    def __init__(self, redis: aioredis.Redis, account_id: str):
        self.redis = redis
        self.channel = progress_channel(account_id)

    async def __call__(self, event: SyncEvent) -> None:
        payload = json.dumps({"type": "sync_progress", "payload": event.to_dict()})
        await self.redis.publish(self.channel, payload)


class RecordingObserver:
    """Keeps events in memory; used by the API for synchronous runs."""

    def __init__(self):
        self.events: list[SyncEvent] = []

    async def __call__(self, event: SyncEvent) -> None:
        self.events.append(event)

    @property
    def stages(self) -> list[str]:
        return [e.stage for e in self.events]
