"""
StockRoute API Dependencies

Dependency injection for DB sessions, auth, and the sync-core collaborators
owned by the app lifespan (OAuth state store, sync locks).
"""

from collections.abc import AsyncGenerator, Callable
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from connect.state_store import StateStore
from core.config import get_settings
from db.session import AsyncSessionLocal
from integrations.base import get_client
from integrations.shopify import exchange_code_for_token
from sync.locks import SyncLocks

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@stockroute.local",
            "account_id": DEV_ACCOUNT_ID,
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.get("account_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


def get_state_store(request: Request) -> StateStore:
    """OAuth state store created in the app lifespan."""
    return request.app.state.state_store


def get_sync_locks(request: Request) -> SyncLocks:
    return request.app.state.sync_locks


def get_client_factory() -> Callable[..., Any]:
    """Builds platform clients; overridden in tests with fakes."""
    return get_client


def get_token_exchanger() -> Callable[..., Any]:
    return exchange_code_for_token


def get_task_dispatcher() -> Callable[[str, dict], Any]:
    """Enqueue a Celery task by name."""
    from workers.celery_app import celery_app

    def _dispatch(task_name: str, kwargs: dict) -> Any:
        return celery_app.send_task(task_name, kwargs=kwargs)

    return _dispatch
