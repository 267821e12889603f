"""
Alert Tiers — configurable expiry alert thresholds and who gets notified.

A tier covers batches expiring within ``days_before_expiry`` days. When an
expiry check generates alerts, each alert is tagged with the tightest
active tier that covers it (expired batches match the tightest tier of
all), together with that tier's notify roles. Inactive tiers never match.

Tiers only route alerts. Severity and the days-range buckets still come
from expiry.classification so check-run counts stay comparable over time.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import date, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, NotFoundError, ValidationError
from db.models import ALERT_SEVERITIES, NOTIFY_ROLES, ExpiryAlert, ExpiryAlertConfig
from expiry.classification import days_until_expiry
from expiry.scanner import load_scannable_batches

logger = structlog.get_logger()

MIN_DAYS_BEFORE_EXPIRY = 1
MAX_DAYS_BEFORE_EXPIRY = 365


# ──────────────────────────────────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────────────────────────────────


def validate_tier(
    *,
    tier_name: str | None,
    days_before_expiry: int | None,
    severity: str | None,
    notify_roles: Iterable[str] | None,
) -> tuple[str, list[str]]:
    """Field checks for a tier. Returns the trimmed name and de-duplicated roles."""
    name = (tier_name or "").strip()
    if not name:
        raise ValidationError("tier_name", "Tier name is required")
    if days_before_expiry is None:
        raise ValidationError("days_before_expiry", "Days before expiry is required")
    if not MIN_DAYS_BEFORE_EXPIRY <= days_before_expiry <= MAX_DAYS_BEFORE_EXPIRY:
        raise ValidationError(
            "days_before_expiry",
            f"Days must be between {MIN_DAYS_BEFORE_EXPIRY} and {MAX_DAYS_BEFORE_EXPIRY}",
        )
    if severity not in ALERT_SEVERITIES:
        raise ValidationError("severity", f"Unknown severity '{severity}'")

    roles = list(dict.fromkeys(notify_roles or []))
    if not roles:
        raise ValidationError("notify_roles", "At least one role must be selected")
    unknown = [role for role in roles if role not in NOTIFY_ROLES]
    if unknown:
        raise ValidationError("notify_roles", f"Unknown role(s): {', '.join(unknown)}")
    return name, roles


# ──────────────────────────────────────────────────────────────────────────
# Matching
# ──────────────────────────────────────────────────────────────────────────


def match_tier(days: int, tiers: Iterable[ExpiryAlertConfig]) -> ExpiryAlertConfig | None:
    """Tightest active tier whose threshold covers ``days``."""
    covering = [tier for tier in tiers if tier.active and days <= tier.days_before_expiry]
    if not covering:
        return None
    return min(covering, key=lambda tier: (tier.days_before_expiry, tier.sort_order or 0))


# ──────────────────────────────────────────────────────────────────────────
# Store operations
# ──────────────────────────────────────────────────────────────────────────


async def list_tiers(db: AsyncSession, active_only: bool = False) -> list[ExpiryAlertConfig]:
    """Tiers in display order: sort_order first (unset last), then threshold."""
    query = select(ExpiryAlertConfig)
    if active_only:
        query = query.where(ExpiryAlertConfig.active.is_(True))
    result = await db.execute(query)
    return sorted(
        result.scalars().all(),
        key=lambda tier: (tier.sort_order is None, tier.sort_order or 0, tier.days_before_expiry),
    )


async def list_tiers_for_role(db: AsyncSession, role: str) -> list[ExpiryAlertConfig]:
    if role not in NOTIFY_ROLES:
        raise ValidationError("role", f"Unknown role '{role}'")
    return [tier for tier in await list_tiers(db) if role in (tier.notify_roles or [])]


async def get_tier(db: AsyncSession, config_id: uuid.UUID) -> ExpiryAlertConfig:
    tier = await db.get(ExpiryAlertConfig, config_id)
    if tier is None:
        raise NotFoundError("ExpiryAlertConfig", config_id)
    return tier


async def _commit_tier(db: AsyncSession, tier: ExpiryAlertConfig) -> ExpiryAlertConfig:
    name = tier.tier_name
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(f"Alert tier '{name}' already exists", tier_name=name) from exc
    await db.refresh(tier)
    return tier


async def create_tier(
    db: AsyncSession,
    *,
    tier_name: str,
    days_before_expiry: int,
    severity: str = "WARNING",
    notify_roles: Iterable[str],
    description: str | None = None,
    active: bool = True,
    sort_order: int | None = None,
) -> ExpiryAlertConfig:
    name, roles = validate_tier(
        tier_name=tier_name,
        days_before_expiry=days_before_expiry,
        severity=severity,
        notify_roles=notify_roles,
    )
    tier = ExpiryAlertConfig(
        tier_name=name,
        days_before_expiry=days_before_expiry,
        severity=severity,
        notify_roles=roles,
        description=description,
        active=active,
        sort_order=sort_order,
    )
    db.add(tier)
    tier = await _commit_tier(db, tier)
    logger.info("alert_tier.created", config_id=str(tier.config_id), tier_name=name, days=days_before_expiry)
    return tier


async def update_tier(
    db: AsyncSession,
    config_id: uuid.UUID,
    *,
    tier_name: str,
    days_before_expiry: int,
    severity: str,
    notify_roles: Iterable[str],
    description: str | None = None,
    active: bool = True,
    sort_order: int | None = None,
) -> ExpiryAlertConfig:
    """Replace a tier's settings."""
    name, roles = validate_tier(
        tier_name=tier_name,
        days_before_expiry=days_before_expiry,
        severity=severity,
        notify_roles=notify_roles,
    )
    tier = await get_tier(db, config_id)
    tier.tier_name = name
    tier.days_before_expiry = days_before_expiry
    tier.severity = severity
    tier.notify_roles = roles
    tier.description = description
    tier.active = active
    tier.sort_order = sort_order
    tier.updated_at = datetime.utcnow()
    tier = await _commit_tier(db, tier)
    logger.info("alert_tier.updated", config_id=str(config_id), tier_name=name)
    return tier


async def toggle_tier(db: AsyncSession, config_id: uuid.UUID) -> ExpiryAlertConfig:
    tier = await get_tier(db, config_id)
    tier.active = not tier.active
    tier.updated_at = datetime.utcnow()
    await db.commit()
    await db.refresh(tier)
    logger.info("alert_tier.toggled", config_id=str(config_id), active=tier.active)
    return tier


async def reorder_tiers(db: AsyncSession, config_ids: list[uuid.UUID]) -> list[ExpiryAlertConfig]:
    """Set sort_order from the position of each id in ``config_ids``."""
    if len(set(config_ids)) != len(config_ids):
        raise ValidationError("config_ids", "Tier ids must not repeat")
    tiers = [await get_tier(db, config_id) for config_id in config_ids]
    for position, tier in enumerate(tiers, start=1):
        tier.sort_order = position
        tier.updated_at = datetime.utcnow()
    await db.commit()
    return await list_tiers(db)


async def delete_tier(db: AsyncSession, config_id: uuid.UUID) -> None:
    """Delete a tier; alerts already tagged with it keep the tier name."""
    tier = await get_tier(db, config_id)
    tier_name = tier.tier_name
    await db.execute(update(ExpiryAlert).where(ExpiryAlert.tier_id == config_id).values(tier_id=None))
    await db.delete(tier)
    await db.commit()
    logger.info("alert_tier.deleted", config_id=str(config_id), tier_name=tier_name)


async def affected_product_count(db: AsyncSession, config_id: uuid.UUID, today: date | None = None) -> dict:
    """Products with scannable stock inside the tier's window right now."""
    tier = await get_tier(db, config_id)
    today = today or date.today()
    rows = await load_scannable_batches(db)
    products = {
        batch.product_id
        for batch, _ in rows
        if batch.current_quantity > 0 and days_until_expiry(batch.expiry_date, today) <= tier.days_before_expiry
    }
    return {
        "config_id": str(config_id),
        "tier_name": tier.tier_name,
        "days_before_expiry": tier.days_before_expiry,
        "affected_products": len(products),
    }
