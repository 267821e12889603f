"""
FIFO Allocator — consumption priority for a product's batches.

Soonest-expiring stock goes first:
  1. expiry_date ascending
  2. manufacture_date ascending (batches without one sort after dated ones)
  3. creation order (or batch number, see Settings.fifo_tie_break)

The ordering is advisory. Callers that dispense across several batches walk
the list in this order; splitting a quantity across batches is their job.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Batch

CONSUMABLE_STATUSES = ("ACTIVE",)


def fifo_sort_key(batch: Batch, tie_break: str = "creation_order") -> tuple:
    manufactured = batch.manufacture_date or date.max
    final = batch.batch_number if tie_break == "batch_number" else batch.creation_seq
    return (batch.expiry_date, batch.manufacture_date is None, manufactured, final)


def order_for_consumption(batches: Iterable[Batch], tie_break: str | None = None) -> list[Batch]:
    """Sort batches into FIFO consumption order. ``sorted`` is stable."""
    tie_break = tie_break or get_settings().fifo_tie_break
    return sorted(batches, key=lambda b: fifo_sort_key(b, tie_break))


async def allocation_order(
    db: AsyncSession,
    product_id: uuid.UUID,
    tie_break: str | None = None,
) -> list[Batch]:
    """Active batches with stock for a product, in consumption order."""
    result = await db.execute(
        select(Batch).where(
            Batch.product_id == product_id,
            Batch.status.in_(CONSUMABLE_STATUSES),
            Batch.current_quantity > 0,
        )
    )
    return order_for_consumption(result.scalars().all(), tie_break)
