"""
Expiry read-side reports: monitoring dashboard, expiry summary, expiring
batches, bucket report and the mark-expired sweep.

Everything except ``mark_expired_batches`` is a pure read. Classification
always goes through expiry.classification.
"""

from __future__ import annotations

from datetime import date, timedelta

import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import count_pending_alerts
from db.models import Batch, ExpiryCheckRun, Product
from expiry.classification import DAYS_RANGE_LABELS, EXPIRED_BUCKET, empty_severity_counts
from expiry.orchestrator import run_summary
from expiry.registry import list_runs
from expiry.scanner import classify_batch, load_scannable_batches, scan_expiry_risk

logger = structlog.get_logger()

RUN_COLUMNS = ["status", "products_checked", "alerts_generated", "execution_time_ms"]


# ──────────────────────────────────────────────────────────────────────────
# Monitoring dashboard
# ──────────────────────────────────────────────────────────────────────────


def summarize_runs(runs: list[ExpiryCheckRun]) -> dict:
    """
    Aggregate run history.

    Averages cover COMPLETED runs; success rate is COMPLETED over all
    finished (COMPLETED + FAILED) runs, in percent.
    """
    frame = pd.DataFrame(
        [{column: getattr(run, column) for column in RUN_COLUMNS} for run in runs],
        columns=RUN_COLUMNS,
    )
    completed = frame[frame["status"] == "COMPLETED"]
    finished = frame[frame["status"].isin(["COMPLETED", "FAILED"])]

    def _mean(column: str) -> float:
        if completed.empty:
            return 0.0
        values = pd.to_numeric(completed[column], errors="coerce").dropna()
        return round(float(values.mean()), 2) if not values.empty else 0.0

    success_rate = round(len(completed) / len(finished) * 100, 2) if len(finished) else 0.0
    return {
        "total_runs": int(len(frame)),
        "completed_runs": int(len(completed)),
        "failed_runs": int((frame["status"] == "FAILED").sum()),
        "running_runs": int((frame["status"] == "RUNNING").sum()),
        "average_products_per_check": _mean("products_checked"),
        "average_alerts_per_check": _mean("alerts_generated"),
        "average_execution_time_ms": _mean("execution_time_ms"),
        "success_rate": success_rate,
    }


def _severity_totals(runs: list[ExpiryCheckRun]) -> dict[str, int]:
    totals = empty_severity_counts()
    for run in runs:
        if run.status != "COMPLETED":
            continue
        for severity, count in (run.alerts_by_severity or {}).items():
            totals[severity] = totals.get(severity, 0) + int(count)
    return totals


async def monitoring_dashboard(db: AsyncSession, history_limit: int = 30, today: date | None = None) -> dict:
    """Recent history plus derived averages. Adds no state."""
    today = today or date.today()
    runs = await list_runs(db, limit=history_limit)
    completed_today = next(
        (run for run in runs if run.check_date == today and run.status == "COMPLETED"),
        None,
    )
    return {
        **summarize_runs(runs),
        "alerts_by_severity_totals": _severity_totals(runs),
        "last_run": run_summary(runs[0]) if runs else None,
        "checked_today": completed_today is not None,
        "recent_runs": [run_summary(run) for run in runs],
    }


# ──────────────────────────────────────────────────────────────────────────
# Batch expiry views
# ──────────────────────────────────────────────────────────────────────────


async def expiry_summary(db: AsyncSession, today: date | None = None) -> dict:
    """Batch counts by severity tier and days range, as of ``today``."""
    scan = await scan_expiry_risk(db, today, apply_transitions=False)
    buckets = scan.bucket_counts()
    expired = scan.expired
    live = [risk for risk in scan.risks if not risk.is_expired]

    return {
        "reference_date": scan.reference_date.isoformat(),
        "total_batches": scan.batches_checked,
        "expired_products": len({risk.product_id for risk in expired}),
        "expired_batches": len(expired),
        "critical_batches": sum(1 for risk in live if risk.severity == "CRITICAL"),
        "warning_batches": sum(1 for risk in live if risk.severity == "WARNING"),
        "safe_batches": sum(1 for risk in live if risk.severity == "INFO"),
        "expiring_7_days": buckets["0-7 days"],
        "expiring_30_days": buckets["8-30 days"],
        "expiring_60_days": buckets["31-60 days"],
        "expiring_90_days": buckets["61-90 days"],
        "expiring_beyond_90_days": buckets["91+ days"],
        "pending_alerts": await count_pending_alerts(db),
        "expired_value": round(sum(risk.value_at_risk for risk in expired), 2),
    }


async def expiring_batches(db: AsyncSession, days_ahead: int = 30, today: date | None = None) -> list[tuple[Batch, Product]]:
    """ACTIVE batches expiring within ``days_ahead`` days, soonest first."""
    today = today or date.today()
    result = await db.execute(
        select(Batch, Product)
        .join(Product, Product.product_id == Batch.product_id)
        .where(
            Batch.status == "ACTIVE",
            Batch.expiry_date > today,
            Batch.expiry_date <= today + timedelta(days=days_ahead),
        )
        .order_by(Batch.expiry_date, Batch.creation_seq)
    )
    return [(row.Batch, row.Product) for row in result.all()]


async def batch_expiry_report(db: AsyncSession, today: date | None = None) -> dict:
    """Per-bucket batch counts, quantities and value, plus the expired pseudo-bucket."""
    today = today or date.today()
    rows = await load_scannable_batches(db)
    labels = (*DAYS_RANGE_LABELS, EXPIRED_BUCKET)
    report = {label: {"batches": 0, "quantity": 0, "value": 0.0} for label in labels}

    for batch, product in rows:
        risk = classify_batch(batch, product, today)
        entry = report[risk.bucket]
        entry["batches"] += 1
        entry["quantity"] += risk.quantity
        entry["value"] = round(entry["value"] + risk.value_at_risk, 2)

    return {
        "reference_date": today.isoformat(),
        "buckets": [{"days_range": label, **report[label]} for label in labels],
    }


async def mark_expired_batches(db: AsyncSession, today: date | None = None) -> dict:
    """EXPIRED transition sweep without recording a check run."""
    scan = await scan_expiry_risk(db, today)
    logger.info("expiry.mark_expired", newly_expired=len(scan.newly_expired))
    return {
        "reference_date": scan.reference_date.isoformat(),
        "expired_count": len(scan.newly_expired),
        "batch_ids": [str(batch_id) for batch_id in scan.newly_expired],
    }
