"""
Stock Adjustment Processor — validated ADD / CONSUME / ADJUST / QUARANTINE,
plus the quarantine exits RELEASE and DISPOSE.

Every successful adjustment writes exactly one immutable StockAdjustment row
in the same transaction as the batch change. Replaying a batch's ledger from
its received quantity reproduces its current quantity (see verify_ledger).

State rules:
  ADD         ACTIVE, DEPLETED (reopens to ACTIVE), EXPIRED (stays EXPIRED);
              a total above the baseline re-bases it
  CONSUME     ACTIVE only; q <= current, reaching 0 marks DEPLETED
  ADJUST      ACTIVE, QUARANTINED; q is the new absolute quantity
  QUARANTINE  any status except QUARANTINED; quantity untouched
  RELEASE     QUARANTINED only; back to ACTIVE, or DEPLETED when empty
  DISPOSE     QUARANTINED, EXPIRED; writes off all remaining units, DEPLETED
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import (
    AlreadyQuarantinedError,
    InsufficientStockError,
    InvalidStateError,
    StockEngineError,
    ValidationError,
)
from db.models import ADJUSTMENT_TYPES, Batch, StockAdjustment
from inventory.batches import get_batch, locked_batch

logger = structlog.get_logger()

ALLOWED_STATUSES = {
    "ADD": ("ACTIVE", "DEPLETED", "EXPIRED"),
    "CONSUME": ("ACTIVE",),
    "ADJUST": ("ACTIVE", "QUARANTINED"),
    "QUARANTINE": ("ACTIVE", "DEPLETED", "EXPIRED"),
    "RELEASE": ("QUARANTINED",),
    "DISPOSE": ("QUARANTINED", "EXPIRED"),
}

# Types whose quantity is taken from the batch, not the request.
NO_QUANTITY_TYPES = ("QUARANTINE", "RELEASE", "DISPOSE")


@dataclass(frozen=True)
class AdjustmentOutcome:
    quantity: int
    initial_quantity: int
    status: str


def validate_request(adjustment_type: str, quantity: int | None, reason: str | None) -> str:
    """Input checks that don't need the batch. Returns the trimmed reason."""
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError("adjustment_type", f"Unknown adjustment type '{adjustment_type}'")
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("reason", "Reason is required")
    if adjustment_type in ("ADD", "CONSUME"):
        if quantity is None or quantity <= 0:
            raise ValidationError("quantity", "Quantity must be greater than 0")
    elif adjustment_type == "ADJUST":
        if quantity is None or quantity < 0:
            raise ValidationError("quantity", "New quantity cannot be negative")
    return cleaned


def plan_adjustment(
    *,
    status: str,
    current_quantity: int,
    initial_quantity: int,
    adjustment_type: str,
    quantity: int | None,
) -> AdjustmentOutcome:
    """Pure state transition for one adjustment against a batch snapshot."""
    if adjustment_type == "QUARANTINE" and status == "QUARANTINED":
        raise AlreadyQuarantinedError(batch_id=None)
    if status not in ALLOWED_STATUSES[adjustment_type]:
        raise InvalidStateError(status, adjustment_type.lower())

    if adjustment_type == "ADD":
        reopened = "ACTIVE" if status == "DEPLETED" else status
        total = current_quantity + quantity
        return AdjustmentOutcome(total, max(total, initial_quantity), reopened)

    if adjustment_type == "CONSUME":
        if quantity > current_quantity:
            raise InsufficientStockError(requested=quantity, available=current_quantity)
        remaining = current_quantity - quantity
        return AdjustmentOutcome(remaining, initial_quantity, "DEPLETED" if remaining == 0 else status)

    if adjustment_type == "ADJUST":
        # Upward past the baseline re-bases it so utilization restarts at 0%.
        baseline = quantity if quantity > initial_quantity else initial_quantity
        new_status = status
        if status == "ACTIVE" and quantity == 0:
            new_status = "DEPLETED"
        return AdjustmentOutcome(quantity, baseline, new_status)

    if adjustment_type == "RELEASE":
        return AdjustmentOutcome(current_quantity, initial_quantity, "ACTIVE" if current_quantity else "DEPLETED")

    if adjustment_type == "DISPOSE":
        return AdjustmentOutcome(0, initial_quantity, "DEPLETED")

    return AdjustmentOutcome(current_quantity, initial_quantity, "QUARANTINED")


async def apply_adjustment(
    db: AsyncSession,
    batch_id: uuid.UUID,
    adjustment_type: str,
    quantity: int | None,
    reason: str,
    actor: str = "system",
) -> Batch:
    """
    Validate and apply one adjustment to a batch.

    Serialized per batch; returns the updated batch. Raises ValidationError,
    NotFoundError, InvalidStateError, InsufficientStockError or
    AlreadyQuarantinedError, leaving the batch untouched.

    The change is committed on ``db``. A rejection after the batch row was
    locked rolls the session back, which expires every instance it holds;
    callers that keep using ORM objects from ``db`` must ``await
    db.refresh(obj)`` before reading them again.
    """
    adjustment_type = (adjustment_type or "").upper()
    cleaned_reason = validate_request(adjustment_type, quantity, reason)
    if adjustment_type in NO_QUANTITY_TYPES:
        quantity = None

    try:
        async with locked_batch(db, batch_id) as batch:
            try:
                outcome = plan_adjustment(
                    status=batch.status,
                    current_quantity=batch.current_quantity,
                    initial_quantity=batch.initial_quantity,
                    adjustment_type=adjustment_type,
                    quantity=quantity,
                )
            except AlreadyQuarantinedError:
                raise AlreadyQuarantinedError(batch_id)
            if adjustment_type == "DISPOSE":
                quantity = batch.current_quantity

            last_seq = await db.execute(
                select(func.max(StockAdjustment.sequence)).where(StockAdjustment.batch_id == batch_id)
            )
            entry = StockAdjustment(
                batch_id=batch_id,
                sequence=(last_seq.scalar() or 0) + 1,
                adjustment_type=adjustment_type,
                quantity=quantity,
                previous_quantity=batch.current_quantity,
                resulting_quantity=outcome.quantity,
                previous_status=batch.status,
                resulting_status=outcome.status,
                reason=cleaned_reason,
                actor=actor,
            )
            db.add(entry)

            previous_quantity = batch.current_quantity
            previous_status = batch.status
            batch.current_quantity = outcome.quantity
            batch.initial_quantity = outcome.initial_quantity
            batch.status = outcome.status
            batch.updated_at = datetime.utcnow()
    except StockEngineError as exc:
        logger.warning(
            "stock.adjust_rejected",
            batch_id=str(batch_id),
            adjustment_type=adjustment_type,
            quantity=quantity,
            error=exc.code,
        )
        raise

    logger.info(
        "stock.adjusted",
        batch_id=str(batch_id),
        adjustment_type=adjustment_type,
        quantity=quantity,
        previous_quantity=previous_quantity,
        resulting_quantity=outcome.quantity,
        previous_status=previous_status,
        resulting_status=outcome.status,
        actor=actor,
    )
    return batch


async def list_adjustments(db: AsyncSession, batch_id: uuid.UUID) -> list[StockAdjustment]:
    """Ledger rows for a batch in chronological order."""
    await get_batch(db, batch_id)
    result = await db.execute(
        select(StockAdjustment).where(StockAdjustment.batch_id == batch_id).order_by(StockAdjustment.sequence)
    )
    return list(result.scalars().all())


def replay_ledger(received_quantity: int, entries: list[StockAdjustment]) -> tuple[int, int | None]:
    """
    Re-apply ledger entries in order.

    Returns the replayed quantity and the sequence of the first entry whose
    recorded result disagrees with the replay (None when all agree).
    """
    quantity = received_quantity
    diverged_at = None
    for entry in entries:
        if entry.adjustment_type == "ADD":
            quantity += entry.quantity
        elif entry.adjustment_type in ("CONSUME", "DISPOSE"):
            quantity -= entry.quantity
        elif entry.adjustment_type == "ADJUST":
            quantity = entry.quantity
        if diverged_at is None and quantity != entry.resulting_quantity:
            diverged_at = entry.sequence
    return quantity, diverged_at


async def verify_ledger(db: AsyncSession, batch_id: uuid.UUID) -> dict:
    """Replay the ledger and compare with the stored quantity."""
    batch = await get_batch(db, batch_id)
    entries = await list_adjustments(db, batch_id)
    replayed, diverged_at = replay_ledger(batch.received_quantity, entries)
    return {
        "batch_id": str(batch_id),
        "entries": len(entries),
        "replayed_quantity": replayed,
        "current_quantity": batch.current_quantity,
        "diverged_at_sequence": diverged_at,
        "consistent": diverged_at is None and replayed == batch.current_quantity,
    }
