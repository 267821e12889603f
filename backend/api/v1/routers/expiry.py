"""
Expiry Router — expiry check monitoring, expiry summary and alert lifecycle.
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import acknowledge_alert, list_alerts, resolve_alert
from api.deps import get_current_user, get_db
from core.config import get_settings
from core.errors import NotFoundError
from core.security import actor_reference
from expiry.orchestrator import ExpiryCheckOrchestrator, run_summary
from expiry.registry import list_runs, runs_for_date
from expiry.reports import expiry_summary, monitoring_dashboard

router = APIRouter(prefix="/api/v1/expiry", tags=["expiry"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CheckRunResponse(BaseModel):
    run_id: UUID
    check_date: date
    status: str
    trigger_kind: str
    forced: bool
    products_checked: int | None
    batches_checked: int | None
    alerts_generated: int | None
    execution_time_ms: int | None
    alerts_by_severity: dict[str, int]
    alerts_by_days_range: dict[str, int]
    error_message: str | None


class ExpiryAlertResponse(BaseModel):
    alert_id: UUID
    run_id: UUID | None
    batch_id: UUID
    product_id: UUID
    alert_type: str
    severity: str
    days_range: str
    days_until_expiry: int
    quantity_affected: int
    message: str
    status: str
    created_at: datetime
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    notes: str | None
    tier_name: str | None = None
    notify_roles: list[str] | None = None

    model_config = {"from_attributes": True}


class AlertActionRequest(BaseModel):
    notes: str | None = None


# ─── Monitoring ─────────────────────────────────────────────────────────────


@router.post("/monitoring/check", response_model=CheckRunResponse)
async def trigger_expiry_check(
    force: bool = False,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Run today's expiry check now.

    Without ``force`` a second check on the same day is refused with 409
    and the id of the run that already covers the day.
    """
    outcome = await ExpiryCheckOrchestrator().run(
        db,
        "MANUAL",
        force=force,
        created_by=actor_reference(user),
    )
    if outcome.run is None:
        code = "already_completed" if outcome.already_completed else "run_in_progress"
        return JSONResponse(
            status_code=409,
            content={
                "error": code,
                "message": outcome.message,
                "detail": {
                    "check_date": outcome.check_date.isoformat(),
                    "existing_run_id": outcome.existing_run_id,
                    "hint": "Retry with force=true to run another check today",
                },
            },
        )
    return run_summary(outcome.run)


@router.get("/monitoring/history", response_model=list[CheckRunResponse])
async def get_check_history(
    limit: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    """Check runs, newest first."""
    runs = await list_runs(db, limit=limit)
    return [run_summary(run) for run in runs]


@router.get("/monitoring/status/{check_date}", response_model=list[CheckRunResponse])
async def get_check_status(
    check_date: date,
    db: AsyncSession = Depends(get_db),
):
    """All runs recorded for a calendar date."""
    runs = await runs_for_date(db, check_date)
    if not runs:
        raise NotFoundError("ExpiryCheckRun", check_date.isoformat())
    return [run_summary(run) for run in runs]


@router.get("/monitoring/dashboard")
async def get_monitoring_dashboard(
    limit: int | None = Query(None, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    """Recent run history with averages and success rate."""
    history_limit = limit or get_settings().dashboard_history_limit
    return await monitoring_dashboard(db, history_limit=history_limit)


# ─── Summary ────────────────────────────────────────────────────────────────


@router.get("/summary")
async def get_expiry_summary(db: AsyncSession = Depends(get_db)):
    """Current batch counts by severity tier and days range."""
    return await expiry_summary(db)


# ─── Alerts ─────────────────────────────────────────────────────────────────


@router.get("/alerts", response_model=list[ExpiryAlertResponse])
async def get_expiry_alerts(
    status: str | None = None,
    severity: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List expiry alerts with optional status and severity filters."""
    return await list_alerts(db, status=status, severity=severity, skip=skip, limit=limit)


@router.patch("/alerts/{alert_id}/acknowledge", response_model=ExpiryAlertResponse)
async def acknowledge_expiry_alert(
    alert_id: UUID,
    body: AlertActionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Acknowledge an open alert."""
    return await acknowledge_alert(db, alert_id, actor_reference(user), notes=body.notes if body else None)


@router.patch("/alerts/{alert_id}/resolve", response_model=ExpiryAlertResponse)
async def resolve_expiry_alert(
    alert_id: UUID,
    body: AlertActionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Resolve an open or acknowledged alert."""
    return await resolve_alert(db, alert_id, actor_reference(user), notes=body.notes if body else None)
