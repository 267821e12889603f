"""
Expiry Check Orchestrator — the single entry point for scheduled and manual
expiry checks.

    start_run ──> scan ──> generate + persist alerts ──> complete_run
        │           └── error / timeout at any later step ──> fail_run, re-raise
        └── AlreadyCompletedError ──> "already completed" outcome

Celery beat (SCHEDULED) and the API (MANUAL) both call ``run``; the run
registry is what decides whether today's check already happened.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import AlertGenerationResult, create_alerts, generate_alerts, publish_alerts
from alerts.tiers import list_tiers
from core.config import get_settings
from core.errors import AlreadyCompletedError, ExpiryScanTimeoutError, RunInProgressError
from db.models import ExpiryAlert, ExpiryCheckRun
from expiry.registry import RunMetrics, complete_run, fail_run, start_run
from expiry.scanner import ScanResult, scan_expiry_risk

logger = structlog.get_logger()

Scanner = Callable[[AsyncSession, date], Awaitable[ScanResult]]
Publisher = Callable[[list[ExpiryAlert]], Awaitable[int]]


@dataclass
class ExpiryCheckOutcome:
    status: str  # "COMPLETED", "ALREADY_COMPLETED", "ALREADY_RUNNING"
    run: ExpiryCheckRun | None = None
    check_date: date | None = None
    existing_run_id: str | None = None
    message: str | None = None

    @property
    def already_completed(self) -> bool:
        return self.status == "ALREADY_COMPLETED"


def run_summary(run: ExpiryCheckRun) -> dict:
    return {
        "run_id": str(run.run_id),
        "check_date": run.check_date.isoformat(),
        "status": run.status,
        "trigger_kind": run.trigger_kind,
        "forced": run.forced,
        "products_checked": run.products_checked,
        "batches_checked": run.batches_checked,
        "alerts_generated": run.alerts_generated,
        "execution_time_ms": run.execution_time_ms,
        "alerts_by_severity": run.alerts_by_severity or {},
        "alerts_by_days_range": run.alerts_by_days_range or {},
        "error_message": run.error_message,
    }


class ExpiryCheckOrchestrator:
    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        scanner: Scanner | None = None,
        publisher: Publisher | None = None,
        publish: bool | None = None,
        today: Callable[[], date] = date.today,
    ):
        settings = get_settings()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.expiry_scan_timeout_seconds
        self.stale_after_seconds = self.timeout_seconds + settings.expiry_stale_run_grace_seconds
        self.scanner = scanner or scan_expiry_risk
        self.publisher = publisher or publish_alerts
        self.publish = settings.expiry_alert_publish_enabled if publish is None else publish
        self.today = today

    async def run(
        self,
        db: AsyncSession,
        trigger_kind: str,
        force: bool = False,
        created_by: str | None = None,
    ) -> ExpiryCheckOutcome:
        check_date = self.today()

        try:
            run = await start_run(
                db,
                check_date,
                trigger_kind,
                force=force,
                created_by=created_by,
                stale_after_seconds=self.stale_after_seconds,
            )
        except AlreadyCompletedError as exc:
            logger.info(
                "expiry_check.already_completed",
                check_date=check_date.isoformat(),
                existing_run_id=str(exc.run_id),
                trigger_kind=trigger_kind,
            )
            return ExpiryCheckOutcome(
                status="ALREADY_COMPLETED",
                check_date=check_date,
                existing_run_id=str(exc.run_id),
                message=exc.message,
            )
        except RunInProgressError as exc:
            logger.info(
                "expiry_check.already_running",
                check_date=check_date.isoformat(),
                existing_run_id=str(exc.run_id),
                trigger_kind=trigger_kind,
            )
            return ExpiryCheckOutcome(
                status="ALREADY_RUNNING",
                check_date=check_date,
                existing_run_id=str(exc.run_id),
                message=exc.message,
            )

        run_id = run.run_id
        started = time.perf_counter()
        try:
            scan, generated, created = await asyncio.wait_for(
                self._scan_and_alert(db, run_id, check_date),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            error = ExpiryScanTimeoutError(self.timeout_seconds)
            await self._fail(db, run_id, error, started)
            raise error from exc
        except Exception as exc:
            logger.error("expiry_check.scan_failed", run_id=str(run_id), error=str(exc), exc_info=True)
            await self._fail(db, run_id, exc, started)
            raise

        metrics = RunMetrics(
            products_checked=scan.products_checked,
            batches_checked=scan.batches_checked,
            alerts_generated=generated.alerts_generated,
            alerts_by_severity=generated.alerts_by_severity,
            alerts_by_days_range=generated.alerts_by_days_range,
        )
        try:
            run = await complete_run(db, run_id, metrics, execution_time_ms=_elapsed_ms(started))
        except Exception as exc:
            logger.error("expiry_check.complete_failed", run_id=str(run_id), error=str(exc), exc_info=True)
            await self._fail(db, run_id, exc, started)
            raise

        if self.publish:
            await self._publish(created)

        return ExpiryCheckOutcome(status="COMPLETED", run=run, check_date=check_date)

    async def _scan_and_alert(
        self,
        db: AsyncSession,
        run_id,
        check_date: date,
    ) -> tuple[ScanResult, AlertGenerationResult, list[ExpiryAlert]]:
        scan = await self.scanner(db, check_date)
        tiers = await list_tiers(db, active_only=True)
        generated = generate_alerts(scan, tiers)
        created = await create_alerts(db, generated, run_id=run_id)
        return scan, generated, created

    async def _fail(self, db: AsyncSession, run_id, error: BaseException, started: float) -> None:
        await db.rollback()
        await fail_run(db, run_id, error, execution_time_ms=_elapsed_ms(started))

    async def _publish(self, alerts: list[ExpiryAlert]) -> None:
        # Delivery is downstream; a broker outage must not fail a finished run.
        try:
            notified = await self.publisher(alerts)
            logger.info("alerts.published", alerts=len(alerts), subscribers=notified)
        except Exception as exc:  # noqa: BLE001
            logger.warning("alerts.publish_failed", alerts=len(alerts), error=str(exc))


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
