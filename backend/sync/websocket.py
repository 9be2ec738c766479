"""
WebSocket endpoint for live sync progress.

Workers publish pipeline stage events on ``sync-progress:<account_id>``;
this endpoint relays them to the dashboard.
"""

import asyncio

import redis.asyncio as aioredis
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from core.config import get_settings
from core.security import decode_access_token
from sync.progress import progress_channel

settings = get_settings()
router = APIRouter()


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "account_id": "00000000-0000-0000-0000-000000000001",
        }
    return decode_access_token(token)


@router.websocket("/ws/sync")
async def websocket_sync_progress(websocket: WebSocket, token: str = Query(...)):
    """
    Stream sync progress via Redis pub/sub.

    Connect: ws://host/ws/sync?token=<jwt>

    Messages sent to client:
        {"type": "sync_progress", "payload": {"integration_id": ..., "stage": "fetching-page 2", ...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None or not user.get("account_id"):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    channel = progress_channel(user["account_id"])
    redis = aioredis.from_url(settings.redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    try:

        async def listen_redis():
            async for message in pubsub.listen():
                if message["type"] == "message":
                    await websocket.send_text(message["data"].decode())

        async def send_heartbeat():
            while True:
                await asyncio.sleep(30)
                await websocket.send_json({"type": "heartbeat", "payload": {}})

        await asyncio.gather(listen_redis(), send_heartbeat())

    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis.aclose()
