"""
Alert Engine — Expiry alert generation, persistence, delivery handoff and
alert lifecycle.

Alert kinds:
  - days_range: batch expires within a days-range bucket
      (0-7 days CRITICAL, 8-30 days WARNING, 31+ days INFO)
  - expired: batch is at or past its expiry date (always CRITICAL)

Generation is idempotent within one invocation: one alert per
(batch, bucket). Whether an unresolved condition should be re-alerted on
the next day is left to notification delivery.

Each alert is tagged with the matching active alert tier (alerts.tiers)
and the roles it notifies. Tiers never change severity or counts.
"""

import json
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import InvalidStateError, NotFoundError
from alerts.tiers import match_tier
from db.models import ExpiryAlert, ExpiryAlertConfig
from expiry.classification import EXPIRED_BUCKET, empty_bucket_counts, empty_severity_counts
from expiry.scanner import BatchRisk, ScanResult

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Generation
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GeneratedAlert:
    batch_id: uuid.UUID
    product_id: uuid.UUID
    alert_type: str
    severity: str
    days_range: str
    days_until_expiry: int
    quantity_affected: int
    message: str
    tier_id: uuid.UUID | None = None
    tier_name: str | None = None
    notify_roles: tuple[str, ...] = ()


@dataclass
class AlertGenerationResult:
    alerts: list[GeneratedAlert] = field(default_factory=list)
    alerts_by_severity: dict[str, int] = field(default_factory=empty_severity_counts)
    alerts_by_days_range: dict[str, int] = field(default_factory=empty_bucket_counts)
    alerts_by_tier: dict[str, int] = field(default_factory=dict)

    @property
    def alerts_generated(self) -> int:
        return len(self.alerts)


def build_message(risk: BatchRisk) -> str:
    if risk.is_expired:
        overdue = abs(risk.days_until_expiry)
        when = "today" if overdue == 0 else f"{overdue} day{'s' if overdue != 1 else ''} ago"
        return (
            f"Batch {risk.batch_number} of {risk.product_name} expired {when} "
            f"({risk.expiry_date.isoformat()}). {risk.quantity} units affected."
        )
    return (
        f"Batch {risk.batch_number} of {risk.product_name} expires in {risk.days_until_expiry} "
        f"day{'s' if risk.days_until_expiry != 1 else ''} ({risk.expiry_date.isoformat()}). "
        f"{risk.quantity} units affected."
    )


def generate_alerts(scan: ScanResult, tiers: Iterable[ExpiryAlertConfig] = ()) -> AlertGenerationResult:
    """Turn scan output into alerts plus per-severity and per-range counts."""
    tiers = list(tiers)
    result = AlertGenerationResult()
    seen: set[tuple[uuid.UUID, str]] = set()

    for risk in scan.risks:
        key = (risk.batch_id, risk.bucket)
        if key in seen:
            continue
        seen.add(key)

        tier = match_tier(risk.days_until_expiry, tiers)
        alert = GeneratedAlert(
            batch_id=risk.batch_id,
            product_id=risk.product_id,
            alert_type="expired" if risk.is_expired else "days_range",
            severity=risk.severity,
            days_range=risk.bucket,
            days_until_expiry=risk.days_until_expiry,
            quantity_affected=risk.quantity,
            message=build_message(risk),
            tier_id=tier.config_id if tier else None,
            tier_name=tier.tier_name if tier else None,
            notify_roles=tuple(tier.notify_roles or ()) if tier else (),
        )
        result.alerts.append(alert)
        if alert.tier_name:
            result.alerts_by_tier[alert.tier_name] = result.alerts_by_tier.get(alert.tier_name, 0) + 1
        result.alerts_by_severity[alert.severity] = result.alerts_by_severity.get(alert.severity, 0) + 1
        result.alerts_by_days_range[alert.days_range] = result.alerts_by_days_range.get(alert.days_range, 0) + 1

    if not result.alerts_by_days_range.get(EXPIRED_BUCKET):
        result.alerts_by_days_range.pop(EXPIRED_BUCKET, None)

    logger.info(
        "alerts.generated",
        total=result.alerts_generated,
        by_severity=result.alerts_by_severity,
        by_tier=result.alerts_by_tier,
    )
    return result


# ──────────────────────────────────────────────────────────────────────────
# Persistence + Publishing
# ──────────────────────────────────────────────────────────────────────────


async def create_alerts(
    db: AsyncSession,
    generated: AlertGenerationResult,
    run_id: uuid.UUID | None = None,
) -> list[ExpiryAlert]:
    """Persist generated alerts to database and return created records."""
    created = []
    for item in generated.alerts:
        alert = ExpiryAlert(
            run_id=run_id,
            batch_id=item.batch_id,
            product_id=item.product_id,
            alert_type=item.alert_type,
            severity=item.severity,
            days_range=item.days_range,
            days_until_expiry=item.days_until_expiry,
            quantity_affected=item.quantity_affected,
            message=item.message,
            status="open",
            tier_id=item.tier_id,
            tier_name=item.tier_name,
            notify_roles=list(item.notify_roles),
        )
        db.add(alert)
        created.append(alert)

    await db.commit()
    return created


async def publish_alerts(alerts: list[ExpiryAlert]) -> int:
    """
    Publish deliverable alerts to Redis pub/sub for notification delivery.
    Returns number of subscribers notified.
    """
    deliverable = [alert for alert in alerts if alert.is_deliverable]
    if not deliverable:
        return 0

    settings = get_settings()
    redis = aioredis.from_url(settings.redis_url)
    try:
        total_subs = 0
        for alert in deliverable:
            payload = json.dumps(
                {
                    "type": "expiry_alert",
                    "payload": {
                        "alert_id": str(alert.alert_id),
                        "alert_type": alert.alert_type,
                        "severity": alert.severity,
                        "days_range": alert.days_range,
                        "days_until_expiry": alert.days_until_expiry,
                        "message": alert.message,
                        "batch_id": str(alert.batch_id),
                        "product_id": str(alert.product_id),
                        "tier_name": alert.tier_name,
                        "notify_roles": alert.notify_roles or [],
                        "created_at": alert.created_at.isoformat(),
                    },
                }
            )
            total_subs += await redis.publish(settings.expiry_alert_channel, payload)
        return total_subs
    finally:
        await redis.aclose()


# ──────────────────────────────────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────────────────────────────────


async def list_alerts(
    db: AsyncSession,
    status: str | None = None,
    severity: str | None = None,
    skip: int = 0,
    limit: int = 50,
) -> list[ExpiryAlert]:
    query = select(ExpiryAlert)
    if status:
        query = query.where(ExpiryAlert.status == status)
    if severity:
        query = query.where(ExpiryAlert.severity == severity)
    query = query.order_by(ExpiryAlert.created_at.desc(), ExpiryAlert.days_until_expiry).offset(skip).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_pending_alerts(db: AsyncSession) -> int:
    result = await db.execute(select(func.count()).select_from(ExpiryAlert).where(ExpiryAlert.status == "open"))
    return int(result.scalar() or 0)


async def _get_alert(db: AsyncSession, alert_id: uuid.UUID) -> ExpiryAlert:
    alert = await db.get(ExpiryAlert, alert_id)
    if alert is None:
        raise NotFoundError("ExpiryAlert", alert_id)
    return alert


async def acknowledge_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    actor: str,
    notes: str | None = None,
) -> ExpiryAlert:
    alert = await _get_alert(db, alert_id)
    if alert.status != "open":
        raise InvalidStateError(alert.status, "acknowledge alert")
    alert.status = "acknowledged"
    alert.acknowledged_at = datetime.utcnow()
    alert.acknowledged_by = actor
    if notes:
        alert.notes = notes
    await db.commit()
    await db.refresh(alert)
    return alert


async def resolve_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    actor: str,
    notes: str | None = None,
) -> ExpiryAlert:
    alert = await _get_alert(db, alert_id)
    if alert.status not in ("open", "acknowledged"):
        raise InvalidStateError(alert.status, "resolve alert")
    alert.status = "resolved"
    alert.resolved_at = datetime.utcnow()
    alert.resolved_by = actor
    if notes:
        alert.notes = notes
    await db.commit()
    await db.refresh(alert)
    return alert

