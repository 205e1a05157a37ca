"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockpulse",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.analysis", "workers.scheduler"],
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
        "workers.analysis.*": {"queue": "analysis"},
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Both jobs fan out across shops via workers.scheduler.dispatch_active_shops.
    beat_schedule={
        "velocity-analysis-daily": {
            "task": "workers.scheduler.dispatch_active_shops",
            "schedule": crontab(hour=6, minute=0),
            "kwargs": {"task_name": "workers.analysis.run_velocity_analysis"},
            "options": {"queue": "sync"},
        },
        "refresh-product-metrics-6h": {
            "task": "workers.scheduler.dispatch_active_shops",
            "schedule": crontab(minute=15, hour="*/6"),
            "kwargs": {"task_name": "workers.analysis.refresh_product_metrics", "require_predictions": False},
            "options": {"queue": "sync"},
        },
    },
)
