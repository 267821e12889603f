"""
Batch Store — authoritative record of batches and their quantities.

No stock rules live here beyond the creation invariants; quantity changes go
through inventory.adjustments. Batches are never deleted, only moved between
ACTIVE / DEPLETED / EXPIRED / QUARANTINED.

Writers take ``locked_batch``: a per-batch asyncio lock plus a row lock,
held until the change is committed, so read-modify-write sequences on one
batch never interleave.
"""

import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import date, datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import DuplicateBatchNumberError, NotFoundError, ValidationError
from core.locks import batch_locks, product_locks
from db.models import Batch, Product
from expiry.classification import classify_expiry
from inventory.fifo import order_for_consumption

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────────────────────────────────


def validate_new_batch(
    *,
    batch_number: str | None,
    quantity: int | None,
    expiry_date: date | None,
    manufacture_date: date | None = None,
    cost_per_unit: float | None = None,
    today: date,
) -> str:
    """Check creation invariants. Returns the normalized batch number."""
    number = (batch_number or "").strip()
    if not number:
        raise ValidationError("batch_number", "Batch number is required")
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity", "Quantity must be greater than 0")
    if expiry_date is None:
        raise ValidationError("expiry_date", "Expiry date is required")
    if expiry_date <= today:
        raise ValidationError("expiry_date", "Expiry date must be in the future")
    if manufacture_date is not None and manufacture_date >= expiry_date:
        raise ValidationError("manufacture_date", "Manufacture date must be before expiry date")
    if cost_per_unit is not None and cost_per_unit < 0:
        raise ValidationError("cost_per_unit", "Cost per unit cannot be negative")
    return number


# ──────────────────────────────────────────────────────────────────────────
# Derived fields
# ──────────────────────────────────────────────────────────────────────────


def utilization_percentage(batch: Batch) -> float:
    if not batch.initial_quantity:
        return 0.0
    return round((batch.initial_quantity - batch.current_quantity) / batch.initial_quantity * 100, 2)


def total_value(batch: Batch) -> float | None:
    if batch.cost_per_unit is None:
        return None
    return round(batch.current_quantity * batch.cost_per_unit, 2)


def derived_fields(batch: Batch, today: date | None = None) -> dict:
    """Read-only values shown alongside a batch."""
    classification = classify_expiry(batch.expiry_date, today or date.today())
    return {
        "days_until_expiry": classification.days_until_expiry,
        "utilization_percentage": utilization_percentage(batch),
        "total_value": total_value(batch),
        "expiry_bucket": classification.bucket,
        "expiry_severity": classification.severity,
    }


# ──────────────────────────────────────────────────────────────────────────
# Store operations
# ──────────────────────────────────────────────────────────────────────────


async def create_batch(
    db: AsyncSession,
    *,
    product_id: uuid.UUID,
    batch_number: str,
    quantity: int,
    expiry_date: date,
    manufacture_date: date | None = None,
    supplier_reference: str | None = None,
    cost_per_unit: float | None = None,
    notes: str | None = None,
    today: date | None = None,
) -> Batch:
    """Create a batch; batch number must be unique within the product."""
    number = validate_new_batch(
        batch_number=batch_number,
        quantity=quantity,
        expiry_date=expiry_date,
        manufacture_date=manufacture_date,
        cost_per_unit=cost_per_unit,
        today=today or date.today(),
    )

    product = await db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)

    async with product_locks.hold(product_id):
        existing = await db.execute(
            select(Batch.batch_id).where(Batch.product_id == product_id, Batch.batch_number == number)
        )
        if existing.first() is not None:
            raise DuplicateBatchNumberError(product_id, number)

        max_seq = await db.execute(select(func.max(Batch.creation_seq)).where(Batch.product_id == product_id))
        batch = Batch(
            product_id=product_id,
            batch_number=number,
            received_quantity=quantity,
            initial_quantity=quantity,
            current_quantity=quantity,
            expiry_date=expiry_date,
            manufacture_date=manufacture_date,
            supplier_reference=(supplier_reference or "").strip() or None,
            cost_per_unit=cost_per_unit,
            notes=notes,
            status="ACTIVE",
            creation_seq=(max_seq.scalar() or 0) + 1,
        )
        db.add(batch)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            logger.warning("batch.create_conflict", product_id=str(product_id), batch_number=number)
            raise DuplicateBatchNumberError(product_id, number) from exc

    await db.refresh(batch)
    logger.info(
        "batch.created",
        batch_id=str(batch.batch_id),
        product_id=str(product_id),
        batch_number=number,
        quantity=quantity,
        expiry_date=expiry_date.isoformat(),
    )
    return batch


async def get_batch(db: AsyncSession, batch_id: uuid.UUID) -> Batch:
    batch = await db.get(Batch, batch_id)
    if batch is None:
        raise NotFoundError("Batch", batch_id)
    return batch


async def list_batches_by_product(
    db: AsyncSession,
    product_id: uuid.UUID,
    today: date | None = None,
) -> list[Batch]:
    """All batches of a product in FIFO order (not storage order)."""
    if await db.get(Product, product_id) is None:
        raise NotFoundError("Product", product_id)
    result = await db.execute(select(Batch).where(Batch.product_id == product_id))
    batches = list(result.scalars().all())

    if get_settings().expire_on_read:
        today = today or date.today()
        for batch in batches:
            if is_expiry_due(batch, today):
                await expire_batch_if_due(db, batch.batch_id, today)

    return order_for_consumption(batches)


@asynccontextmanager
async def locked_batch(db: AsyncSession, batch_id: uuid.UUID) -> AsyncIterator[Batch]:
    """
    Single-writer section for one batch.

    Yields the freshly loaded row; commits when the block exits cleanly,
    rolls back otherwise. The lock spans the commit.
    """
    async with batch_locks.hold(batch_id):
        result = await db.execute(
            select(Batch).where(Batch.batch_id == batch_id).with_for_update().execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        try:
            yield batch
            await db.commit()
        except BaseException:
            await db.rollback()
            raise


async def update_batch(
    db: AsyncSession,
    batch_id: uuid.UUID,
    mutation: Callable[[Batch], None],
) -> Batch:
    """Apply ``mutation`` to a batch atomically."""
    async with locked_batch(db, batch_id) as batch:
        mutation(batch)
        batch.updated_at = datetime.utcnow()
    return batch


def is_expiry_due(batch: Batch, today: date) -> bool:
    if batch.status in ("DEPLETED", "QUARANTINED", "EXPIRED"):
        return False
    return classify_expiry(batch.expiry_date, today).is_expired


async def expire_batch_if_due(db: AsyncSession, batch_id: uuid.UUID, today: date) -> bool:
    """
    Move a batch to EXPIRED if its expiry date has been reached.

    Re-checked under the batch lock, so a concurrent QUARANTINE or
    depletion wins over a stale read.
    """
    expired = False
    async with locked_batch(db, batch_id) as batch:
        if is_expiry_due(batch, today):
            batch.status = "EXPIRED"
            batch.updated_at = datetime.utcnow()
            expired = True
    if expired:
        logger.info(
            "expiry.batch_expired",
            batch_id=str(batch_id),
            expiry_date=batch.expiry_date.isoformat(),
            reference_date=today.isoformat(),
        )
    return expired
