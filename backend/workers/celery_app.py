"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockroute",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.sync", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.sync.*": {"queue": "sync"},
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Jobs fan out across connected channels via workers.scheduler.dispatch_channels.
    beat_schedule={
        # Incremental: each run only asks for records updated since the last completed run
        "sync-channel-orders-15m": {
            "task": "workers.scheduler.dispatch_channels",
            "schedule": crontab(minute="*/15"),
            "kwargs": {
                "task_name": "workers.sync.sync_channel",
                "platform_kind": "ecommerce",
                "task_kwargs": {"entity_kind": "orders"},
            },
            "options": {"queue": "sync"},
        },
        "sync-channel-products-hourly": {
            "task": "workers.scheduler.dispatch_channels",
            "schedule": crontab(minute=5),
            "kwargs": {
                "task_name": "workers.sync.sync_channel",
                "platform_kind": "ecommerce",
                "task_kwargs": {"entity_kind": "products"},
            },
            "options": {"queue": "sync"},
        },
        "refresh-carrier-catalogs-daily": {
            "task": "workers.scheduler.dispatch_channels",
            "schedule": crontab(hour=4, minute=0),
            "kwargs": {
                "task_name": "workers.sync.refresh_carrier_catalogs",
                "platform_kind": "shipping",
            },
            "options": {"queue": "sync"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
