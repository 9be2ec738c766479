"""Beat fan-out: one channel-scoped task per connected, enabled channel."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def active_channel_ids(db: AsyncSession, platform_kind: str) -> list[str]:
    from db.models import ChannelIntegrationRow

    result = await db.execute(
        select(ChannelIntegrationRow.integration_id)
        .where(
            ChannelIntegrationRow.platform_kind == platform_kind,
            ChannelIntegrationRow.status == "connected",
            ChannelIntegrationRow.enabled.is_(True),
        )
        .order_by(ChannelIntegrationRow.created_at)
    )
    return [str(integration_id) for integration_id in result.scalars()]


@celery_app.task(
    name="workers.scheduler.dispatch_channels",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_channels(
    self,
    task_name: str,
    platform_kind: str = "ecommerce",
    task_kwargs: dict | None = None,
):
    """
    Send ``task_name`` once per active channel of ``platform_kind``, adding
    ``integration_id`` to ``task_kwargs``. Only ``workers.*`` tasks may be
    dispatched.
    """
    from core.config import get_settings

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch() -> dict:
        engine = create_async_engine(get_settings().database_url)
        try:
            async with async_sessionmaker(engine, class_=AsyncSession)() as db:
                channel_ids = await active_channel_ids(db, platform_kind)
        finally:
            await engine.dispose()

        for integration_id in channel_ids:
            celery_app.send_task(task_name, kwargs={**(task_kwargs or {}), "integration_id": integration_id})

        summary = {
            "status": "success",
            "task_name": task_name,
            "platform_kind": platform_kind,
            "channel_count": len(channel_ids),
            "dispatched_count": len(channel_ids),
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            "run_id": self.request.id or "manual",
        }
        logger.info("scheduler.dispatch_complete", **summary)
        return summary

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
