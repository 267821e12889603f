"""
Batches Router — batch creation, FIFO listing, stock adjustments and
batch-level expiry views.
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from core.security import actor_reference
from db.models import Batch, Product
from expiry.reports import batch_expiry_report, expiring_batches, mark_expired_batches
from inventory.adjustments import apply_adjustment, list_adjustments, verify_ledger
from inventory.batches import create_batch, derived_fields, get_batch, list_batches_by_product

router = APIRouter(prefix="/api/v1/batches", tags=["batches"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class BatchCreate(BaseModel):
    product_id: UUID
    batch_number: str
    quantity: int
    expiry_date: date
    manufacture_date: date | None = None
    supplier_reference: str | None = None
    cost_per_unit: float | None = None
    notes: str | None = None


class StockAdjustmentRequest(BaseModel):
    batch_id: UUID
    adjustment_type: str  # ADD, CONSUME, ADJUST, QUARANTINE, RELEASE, DISPOSE
    quantity: int | None = None
    reason: str


class QuarantineActionRequest(BaseModel):
    reason: str


class BatchResponse(BaseModel):
    batch_id: UUID
    product_id: UUID
    batch_number: str
    initial_quantity: int
    current_quantity: int
    expiry_date: date
    manufacture_date: date | None
    supplier_reference: str | None
    cost_per_unit: float | None
    status: str
    notes: str | None
    created_at: datetime
    updated_at: datetime
    # Derived
    days_until_expiry: int
    utilization_percentage: float
    total_value: float | None
    expiry_bucket: str
    expiry_severity: str


class ExpiringBatchResponse(BatchResponse):
    product_name: str
    product_sku: str


class StockAdjustmentResponse(BaseModel):
    adjustment_id: UUID
    batch_id: UUID
    sequence: int
    adjustment_type: str
    quantity: int | None
    previous_quantity: int
    resulting_quantity: int
    previous_status: str
    resulting_status: str
    reason: str
    actor: str
    created_at: datetime

    model_config = {"from_attributes": True}


class LedgerCheckResponse(BaseModel):
    batch_id: UUID
    entries: int
    replayed_quantity: int
    current_quantity: int
    diverged_at_sequence: int | None
    consistent: bool


class BucketReportRow(BaseModel):
    days_range: str
    batches: int
    quantity: int
    value: float


class BatchExpiryReportResponse(BaseModel):
    reference_date: date
    buckets: list[BucketReportRow]


class MarkExpiredResponse(BaseModel):
    reference_date: date
    expired_count: int
    batch_ids: list[UUID]


# ─── Helpers ─────────────────────────────────────────────────────────────────


def _batch_payload(batch: Batch) -> dict:
    return {
        "batch_id": batch.batch_id,
        "product_id": batch.product_id,
        "batch_number": batch.batch_number,
        "initial_quantity": batch.initial_quantity,
        "current_quantity": batch.current_quantity,
        "expiry_date": batch.expiry_date,
        "manufacture_date": batch.manufacture_date,
        "supplier_reference": batch.supplier_reference,
        "cost_per_unit": batch.cost_per_unit,
        "status": batch.status,
        "notes": batch.notes,
        "created_at": batch.created_at,
        "updated_at": batch.updated_at,
        **derived_fields(batch),
    }


def to_batch_response(batch: Batch) -> BatchResponse:
    return BatchResponse(**_batch_payload(batch))


def to_expiring_response(batch: Batch, product: Product) -> ExpiringBatchResponse:
    return ExpiringBatchResponse(**_batch_payload(batch), product_name=product.name, product_sku=product.sku)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/", response_model=BatchResponse, status_code=201)
async def create_batch_endpoint(
    body: BatchCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Create a batch for a product."""
    batch = await create_batch(db, **body.model_dump())
    return to_batch_response(batch)


@router.post("/adjust", response_model=BatchResponse)
async def adjust_stock(
    body: StockAdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Apply an ADD / CONSUME / ADJUST / QUARANTINE / RELEASE / DISPOSE adjustment to a batch."""
    batch = await apply_adjustment(
        db,
        body.batch_id,
        body.adjustment_type,
        body.quantity,
        body.reason,
        actor=actor_reference(user),
    )
    return to_batch_response(batch)


@router.get("/expiring", response_model=list[ExpiringBatchResponse])
async def list_expiring_batches(
    days_ahead: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    """Active batches expiring within the next ``days_ahead`` days, soonest first."""
    rows = await expiring_batches(db, days_ahead=days_ahead)
    return [to_expiring_response(batch, product) for batch, product in rows]


@router.get("/expiry-report", response_model=BatchExpiryReportResponse)
async def get_batch_expiry_report(db: AsyncSession = Depends(get_db)):
    """Batch counts, quantities and value per days range."""
    return await batch_expiry_report(db)


@router.post("/mark-expired", response_model=MarkExpiredResponse)
async def mark_expired(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Move batches past their expiry date to EXPIRED."""
    return await mark_expired_batches(db)


@router.get("/product/{product_id}", response_model=list[BatchResponse])
async def list_product_batches(
    product_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """All batches of a product in FIFO consumption order. 404 for an unknown product."""
    batches = await list_batches_by_product(db, product_id)
    return [to_batch_response(batch) for batch in batches]


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch_endpoint(
    batch_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get a single batch by ID."""
    return to_batch_response(await get_batch(db, batch_id))


@router.get("/{batch_id}/adjustments", response_model=list[StockAdjustmentResponse])
async def get_batch_adjustments(
    batch_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Stock adjustment ledger for a batch, oldest first."""
    return await list_adjustments(db, batch_id)


@router.get("/{batch_id}/ledger-check", response_model=LedgerCheckResponse)
async def check_batch_ledger(
    batch_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Replay the ledger and compare it with the batch's current quantity."""
    return await verify_ledger(db, batch_id)


@router.post("/{batch_id}/release", response_model=BatchResponse)
async def release_batch(
    batch_id: UUID,
    body: QuarantineActionRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Return a quarantined batch to service."""
    batch = await apply_adjustment(db, batch_id, "RELEASE", None, body.reason, actor=actor_reference(user))
    return to_batch_response(batch)


@router.post("/{batch_id}/dispose", response_model=BatchResponse)
async def dispose_batch(
    batch_id: UUID,
    body: QuarantineActionRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Write off all remaining units of a quarantined or expired batch."""
    batch = await apply_adjustment(db, batch_id, "DISPOSE", None, body.reason, actor=actor_reference(user))
    return to_batch_response(batch)
