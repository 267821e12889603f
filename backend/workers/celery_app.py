"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "pharmatrack",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
        "workers.expiry.*": {"queue": "expiry"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Expiry Monitoring ──────────────────────────────────────
        # Duplicate firings on the same day are absorbed by the run registry.
        "expiry-check-daily": {
            "task": "workers.expiry.run_scheduled_expiry_check",
            "schedule": crontab(hour=settings.expiry_check_hour, minute=settings.expiry_check_minute),
            "options": {"queue": "expiry"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
