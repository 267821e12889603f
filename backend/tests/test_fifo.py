"""
Tests for FIFO consumption ordering.
"""

from datetime import date

import pytest

from db.models import Batch
from inventory.batches import list_batches_by_product
from inventory.fifo import allocation_order, order_for_consumption


def _batch(number, expiry, manufactured=None, seq=1):
    return Batch(
        batch_number=number,
        expiry_date=expiry,
        manufacture_date=manufactured,
        creation_seq=seq,
        current_quantity=10,
        initial_quantity=10,
        received_quantity=10,
        status="ACTIVE",
    )


# ── Pure Ordering ─────────────────────────────────────────────────────


class TestOrderForConsumption:
    def test_expiry_then_manufacture_date(self):
        a = _batch("A", date(2025, 3, 1), seq=1)
        b = _batch("B", date(2025, 2, 1), date(2024, 6, 1), seq=2)
        c = _batch("C", date(2025, 2, 1), date(2024, 5, 1), seq=3)

        ordered = order_for_consumption([a, b, c])

        assert [batch.batch_number for batch in ordered] == ["C", "B", "A"]

    def test_missing_manufacture_date_sorts_last(self):
        undated = _batch("U", date(2025, 2, 1), None, seq=1)
        dated = _batch("D", date(2025, 2, 1), date(2024, 12, 1), seq=2)

        ordered = order_for_consumption([undated, dated])

        assert [batch.batch_number for batch in ordered] == ["D", "U"]

    def test_creation_order_breaks_full_ties(self):
        first = _batch("Z-LATE-NAME", date(2025, 2, 1), date(2024, 12, 1), seq=1)
        second = _batch("A-EARLY-NAME", date(2025, 2, 1), date(2024, 12, 1), seq=2)

        ordered = order_for_consumption([second, first], tie_break="creation_order")

        assert ordered == [first, second]

    def test_batch_number_tie_break(self):
        first = _batch("Z-LATE-NAME", date(2025, 2, 1), seq=1)
        second = _batch("A-EARLY-NAME", date(2025, 2, 1), seq=2)

        ordered = order_for_consumption([first, second], tie_break="batch_number")

        assert ordered == [second, first]

    def test_empty_input(self):
        assert order_for_consumption([]) == []


# ── Store Queries ─────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestFifoQueries:
    async def test_list_by_product_is_fifo_not_storage_order(self, test_db, product, make_batch):
        late = await make_batch(product, batch_number="LATE", expiry_date=date(2031, 6, 1))
        early = await make_batch(product, batch_number="EARLY", expiry_date=date(2031, 1, 1))

        batches = await list_batches_by_product(test_db, product.product_id)

        assert [b.batch_id for b in batches] == [early.batch_id, late.batch_id]

    async def test_allocation_order_skips_unconsumable(self, test_db, product, make_batch):
        await make_batch(product, batch_number="QUAR", expiry_date=date(2031, 1, 1), status="QUARANTINED")
        await make_batch(product, batch_number="EMPTY", expiry_date=date(2031, 1, 2), quantity=0, status="DEPLETED")
        usable = await make_batch(product, batch_number="OK", expiry_date=date(2031, 2, 1))

        batches = await allocation_order(test_db, product.product_id)

        assert [b.batch_id for b in batches] == [usable.batch_id]

    async def test_list_includes_all_statuses(self, test_db, product, make_batch):
        await make_batch(product, status="QUARANTINED")
        await make_batch(product, quantity=0, status="DEPLETED")

        batches = await list_batches_by_product(test_db, product.product_id)

        assert len(batches) == 2
