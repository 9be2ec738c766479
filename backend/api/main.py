"""
StockRoute API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from connect.state_store import InMemoryStateStore, RedisStateStore
from core.config import get_settings
from sync.locks import InMemorySyncLocks, RedisSyncLocks

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("StockRoute API starting up", version=settings.app_version, coordination=settings.coordination_backend)
    if settings.database_auto_create:
        from db.session import init_db

        await init_db()
    redis = None
    if settings.coordination_backend == "memory":
        app.state.state_store = InMemoryStateStore()
        app.state.sync_locks = InMemorySyncLocks()
    else:
        redis = aioredis.from_url(settings.redis_url)
        app.state.state_store = RedisStateStore(redis)
        app.state.sync_locks = RedisSyncLocks(redis, ttl_seconds=settings.sync_lock_ttl_seconds)
    try:
        yield
    finally:
        if redis is not None:
            await redis.aclose()
        logger.info("StockRoute API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-channel order and inventory sync with warehouse routing",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import integrations
from sync.websocket import router as ws_router

app.include_router(integrations.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
