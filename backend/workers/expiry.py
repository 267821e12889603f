"""
Expiry Workers — the scheduled daily expiry check.

Celery beat fires ``run_scheduled_expiry_check`` once a day (see
celery_app.py). The task only wires a database session to the
orchestrator; whether today's check already ran is decided by the run
registry, so a redelivered or doubled beat message is harmless.
"""

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings
from core.errors import StockEngineError
from expiry.orchestrator import ExpiryCheckOrchestrator, run_summary
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def run_expiry_check(database_url: str, force: bool = False, orchestrator: ExpiryCheckOrchestrator | None = None) -> dict:
    """Run one SCHEDULED check against ``database_url`` and summarize it."""
    engine = create_async_engine(database_url)
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        orchestrator = orchestrator or ExpiryCheckOrchestrator()

        async with async_session() as db:
            outcome = await orchestrator.run(db, "SCHEDULED", force=force, created_by="scheduler")

        if outcome.run is None:
            return {
                "status": "skipped",
                "reason": outcome.status.lower(),
                "check_date": outcome.check_date.isoformat(),
                "existing_run_id": outcome.existing_run_id,
            }
        return {
            **run_summary(outcome.run),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }
    finally:
        await engine.dispose()


@celery_app.task(
    name="workers.expiry.run_scheduled_expiry_check",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def run_scheduled_expiry_check(self, force: bool = False):
    """
    Daily job: scan batch expiry, record the run and raise alerts.

    Engine errors (including scan timeouts) are already recorded as a
    FAILED run and are not retried; infrastructure errors are. When the day
    is still claimed by a RUNNING run (a redelivery after a worker crash),
    the task retries once that claim can be treated as stale.
    """
    task_id = self.request.id or "manual"
    logger.info("expiry_task.started", task_id=task_id, force=force)

    try:
        summary = asyncio.run(run_expiry_check(get_settings().database_url, force=force))
    except StockEngineError as exc:
        logger.error("expiry_task.failed", task_id=task_id, error=exc.code, message=exc.message)
        raise
    except Exception as exc:
        logger.error("expiry_task.failed", task_id=task_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    if summary.get("reason") == "already_running":
        settings = get_settings()
        countdown = settings.expiry_scan_timeout_seconds + settings.expiry_stale_run_grace_seconds
        logger.info("expiry_task.deferred", task_id=task_id, existing_run_id=summary["existing_run_id"], countdown=countdown)
        raise self.retry(countdown=countdown)

    logger.info(
        "expiry_task.completed",
        task_id=task_id,
        status=summary["status"],
        alerts_generated=summary.get("alerts_generated"),
    )
    return summary
