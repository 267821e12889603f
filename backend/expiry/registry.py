"""
Check Run Registry — at most one completed expiry check per calendar day.

Per date:  {no run} -> RUNNING -> COMPLETED | FAILED

start_run is an atomic check-and-set. Inside a process the per-date lock
orders competing triggers; across processes the unique ``claim_key`` column
lets only one non-forced run hold the day. A FAILED run gives the claim back
so a retry (or the next scheduled run) can proceed. A RUNNING claim older
than the stale window belongs to a run whose worker died; it is failed and
its claim released by the next start. Forced runs never take the claim and
are recorded next to the existing ones.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import (
    AlreadyCompletedError,
    InvalidStateError,
    NotFoundError,
    RunInProgressError,
    ValidationError,
)
from core.locks import check_date_locks
from db.models import TRIGGER_KINDS, ExpiryCheckRun

logger = structlog.get_logger()

TERMINAL_STATUSES = ("COMPLETED", "FAILED")


@dataclass
class RunMetrics:
    products_checked: int = 0
    batches_checked: int = 0
    alerts_generated: int = 0
    alerts_by_severity: dict[str, int] = field(default_factory=dict)
    alerts_by_days_range: dict[str, int] = field(default_factory=dict)


async def _completed_run_for(db: AsyncSession, check_date: date) -> ExpiryCheckRun | None:
    result = await db.execute(
        select(ExpiryCheckRun)
        .where(ExpiryCheckRun.check_date == check_date, ExpiryCheckRun.status == "COMPLETED")
        .order_by(ExpiryCheckRun.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _claim_holder(db: AsyncSession, check_date: date) -> ExpiryCheckRun | None:
    result = await db.execute(
        select(ExpiryCheckRun)
        .where(ExpiryCheckRun.claim_key == check_date.isoformat())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _is_stale(run: ExpiryCheckRun, stale_after_seconds: float) -> bool:
    return run.status == "RUNNING" and datetime.utcnow() - run.started_at > timedelta(seconds=stale_after_seconds)


async def _fail_stale(db: AsyncSession, run: ExpiryCheckRun, stale_after_seconds: float) -> None:
    age = (datetime.utcnow() - run.started_at).total_seconds()
    logger.warning(
        "expiry_check.stale_run",
        run_id=str(run.run_id),
        check_date=run.check_date.isoformat(),
        age_seconds=round(age),
    )
    await fail_run(db, run.run_id, f"stale run: still RUNNING after {age:.0f}s (limit {stale_after_seconds:g}s)")


async def start_run(
    db: AsyncSession,
    check_date: date,
    trigger_kind: str,
    force: bool = False,
    created_by: str | None = None,
    stale_after_seconds: float | None = None,
) -> ExpiryCheckRun:
    """
    Open a RUNNING run for ``check_date``.

    Raises AlreadyCompletedError when the day already has a COMPLETED run
    and ``force`` is false, RunInProgressError when another non-forced run
    for the day is still RUNNING. A claim holder started more than
    ``stale_after_seconds`` ago (default: scan timeout plus grace) is marked
    FAILED first and the new run takes its place.
    """
    if stale_after_seconds is None:
        settings = get_settings()
        stale_after_seconds = settings.expiry_scan_timeout_seconds + settings.expiry_stale_run_grace_seconds
    if trigger_kind not in TRIGGER_KINDS:
        raise ValidationError("trigger_kind", f"Unknown trigger kind '{trigger_kind}'")

    async with check_date_locks.hold(check_date):
        if not force:
            completed = await _completed_run_for(db, check_date)
            if completed is not None:
                raise AlreadyCompletedError(check_date, completed.run_id)
            holder = await _claim_holder(db, check_date)
            if holder is not None and _is_stale(holder, stale_after_seconds):
                await _fail_stale(db, holder, stale_after_seconds)
                holder = None
            if holder is not None:
                raise RunInProgressError(check_date, holder.run_id)

        run = ExpiryCheckRun(
            check_date=check_date,
            claim_key=None if force else check_date.isoformat(),
            status="RUNNING",
            trigger_kind=trigger_kind,
            forced=force,
            created_by=created_by,
            started_at=datetime.utcnow(),
        )
        db.add(run)
        try:
            await db.commit()
        except IntegrityError as exc:
            # Another process claimed the day between our read and insert.
            await db.rollback()
            holder = await _claim_holder(db, check_date)
            if holder is not None and holder.status == "COMPLETED":
                raise AlreadyCompletedError(check_date, holder.run_id) from exc
            raise RunInProgressError(check_date, holder.run_id if holder else None) from exc

    logger.info(
        "expiry_check.started",
        run_id=str(run.run_id),
        check_date=check_date.isoformat(),
        trigger_kind=trigger_kind,
        forced=force,
    )
    return run


async def get_run(db: AsyncSession, run_id: uuid.UUID) -> ExpiryCheckRun:
    run = await db.get(ExpiryCheckRun, run_id)
    if run is None:
        raise NotFoundError("ExpiryCheckRun", run_id)
    return run


async def _terminate(db: AsyncSession, run_id: uuid.UUID, status: str, apply) -> ExpiryCheckRun:
    async with check_date_locks.hold(run_id):
        result = await db.execute(
            select(ExpiryCheckRun)
            .where(ExpiryCheckRun.run_id == run_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError("ExpiryCheckRun", run_id)
        if run.status in TERMINAL_STATUSES:
            raise InvalidStateError(run.status, f"mark run {status.lower()}")

        now = datetime.utcnow()
        run.status = status
        run.completed_at = now
        if run.execution_time_ms is None:
            run.execution_time_ms = int((now - run.started_at).total_seconds() * 1000)
        apply(run)
        await db.commit()
    return run


async def complete_run(
    db: AsyncSession,
    run_id: uuid.UUID,
    metrics: RunMetrics,
    execution_time_ms: int | None = None,
) -> ExpiryCheckRun:
    """RUNNING -> COMPLETED, exactly once."""

    def _apply(run: ExpiryCheckRun) -> None:
        if execution_time_ms is not None:
            run.execution_time_ms = execution_time_ms
        run.products_checked = metrics.products_checked
        run.batches_checked = metrics.batches_checked
        run.alerts_generated = metrics.alerts_generated
        run.alerts_by_severity = dict(metrics.alerts_by_severity)
        run.alerts_by_days_range = dict(metrics.alerts_by_days_range)

    run = await _terminate(db, run_id, "COMPLETED", _apply)
    logger.info(
        "expiry_check.completed",
        run_id=str(run_id),
        check_date=run.check_date.isoformat(),
        products_checked=run.products_checked,
        alerts_generated=run.alerts_generated,
        execution_time_ms=run.execution_time_ms,
    )
    return run


async def fail_run(
    db: AsyncSession,
    run_id: uuid.UUID,
    error: BaseException | str,
    execution_time_ms: int | None = None,
) -> ExpiryCheckRun:
    """RUNNING -> FAILED, exactly once. Releases the day's claim."""
    message = error if isinstance(error, str) else (str(error) or type(error).__name__)

    def _apply(run: ExpiryCheckRun) -> None:
        if execution_time_ms is not None:
            run.execution_time_ms = execution_time_ms
        run.claim_key = None
        run.error_message = message

    run = await _terminate(db, run_id, "FAILED", _apply)
    logger.error(
        "expiry_check.failed",
        run_id=str(run_id),
        check_date=run.check_date.isoformat(),
        error=message,
    )
    return run


async def list_runs(db: AsyncSession, limit: int | None = None) -> list[ExpiryCheckRun]:
    """Run history, most recent first."""
    query = select(ExpiryCheckRun).order_by(ExpiryCheckRun.started_at.desc(), ExpiryCheckRun.check_date.desc())
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def runs_for_date(db: AsyncSession, check_date: date) -> list[ExpiryCheckRun]:
    result = await db.execute(
        select(ExpiryCheckRun)
        .where(ExpiryCheckRun.check_date == check_date)
        .order_by(ExpiryCheckRun.started_at.desc())
    )
    return list(result.scalars().all())
