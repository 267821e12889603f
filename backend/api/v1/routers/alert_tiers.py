"""
Alert Tiers Router — configurable expiry alert thresholds and notify roles.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.tiers import (
    affected_product_count,
    create_tier,
    delete_tier,
    get_tier,
    list_tiers,
    list_tiers_for_role,
    reorder_tiers,
    toggle_tier,
    update_tier,
)
from api.deps import get_current_user, get_db

router = APIRouter(prefix="/api/v1/expiry/configs", tags=["alert-tiers"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertTierRequest(BaseModel):
    tier_name: str
    days_before_expiry: int
    severity: str = "WARNING"
    description: str | None = None
    active: bool = True
    notify_roles: list[str] = []
    sort_order: int | None = None


class AlertTierResponse(BaseModel):
    config_id: UUID
    tier_name: str
    days_before_expiry: int
    severity: str
    description: str | None
    active: bool
    notify_roles: list[str]
    sort_order: int | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AffectedProductsResponse(BaseModel):
    config_id: UUID
    tier_name: str
    days_before_expiry: int
    affected_products: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertTierResponse])
async def list_alert_tiers(db: AsyncSession = Depends(get_db)):
    """All tiers in display order."""
    return await list_tiers(db)


@router.get("/active", response_model=list[AlertTierResponse])
async def list_active_alert_tiers(db: AsyncSession = Depends(get_db)):
    return await list_tiers(db, active_only=True)


@router.get("/role/{role}", response_model=list[AlertTierResponse])
async def list_alert_tiers_for_role(role: str, db: AsyncSession = Depends(get_db)):
    """Tiers that notify ``role``."""
    return await list_tiers_for_role(db, role)


@router.put("/sort-order", response_model=list[AlertTierResponse])
async def reorder_alert_tiers(
    config_ids: list[UUID],
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Set display order from the position of each id in the list."""
    return await reorder_tiers(db, config_ids)


@router.post("/", response_model=AlertTierResponse, status_code=201)
async def create_alert_tier(
    body: AlertTierRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Create an alert tier."""
    return await create_tier(db, **body.model_dump())


@router.get("/{config_id}", response_model=AlertTierResponse)
async def get_alert_tier(config_id: UUID, db: AsyncSession = Depends(get_db)):
    return await get_tier(db, config_id)


@router.put("/{config_id}", response_model=AlertTierResponse)
async def update_alert_tier(
    config_id: UUID,
    body: AlertTierRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Replace a tier's settings."""
    return await update_tier(db, config_id, **body.model_dump())


@router.put("/{config_id}/toggle", response_model=AlertTierResponse)
async def toggle_alert_tier(
    config_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Flip a tier between active and inactive."""
    return await toggle_tier(db, config_id)


@router.delete("/{config_id}", status_code=204)
async def delete_alert_tier(
    config_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    await delete_tier(db, config_id)


@router.get("/{config_id}/affected-products", response_model=AffectedProductsResponse)
async def get_affected_products(config_id: UUID, db: AsyncSession = Depends(get_db)):
    """Products with stock inside the tier's window today."""
    return await affected_product_count(db, config_id)
