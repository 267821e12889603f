"""
Tests for the Batch Store — creation invariants, lookups, derived fields and
the EXPIRED transition.
"""

import uuid
from datetime import date, timedelta

import pytest

import inventory.batches
from core.config import get_settings
from core.errors import ConflictError, DuplicateBatchNumberError, NotFoundError, ValidationError
from inventory.batches import (
    create_batch,
    derived_fields,
    expire_batch_if_due,
    get_batch,
    list_batches_by_product,
    update_batch,
    validate_new_batch,
)

TODAY = date(2025, 1, 10)


# ── Creation Rules ────────────────────────────────────────────────────


class TestValidateNewBatch:
    def _validate(self, **overrides):
        data = {
            "batch_number": "AMX-2025-01",
            "quantity": 100,
            "expiry_date": TODAY + timedelta(days=365),
            "manufacture_date": TODAY - timedelta(days=30),
            "cost_per_unit": 0.45,
            "today": TODAY,
        }
        data.update(overrides)
        return validate_new_batch(**data)

    def test_valid_batch_trims_number(self):
        assert self._validate(batch_number="  AMX-2025-01 ") == "AMX-2025-01"

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"batch_number": "   "}, "batch_number"),
            ({"batch_number": None}, "batch_number"),
            ({"quantity": 0}, "quantity"),
            ({"quantity": -5}, "quantity"),
            ({"expiry_date": None}, "expiry_date"),
            ({"expiry_date": TODAY}, "expiry_date"),
            ({"expiry_date": TODAY - timedelta(days=1)}, "expiry_date"),
            ({"manufacture_date": TODAY + timedelta(days=365)}, "manufacture_date"),
            ({"cost_per_unit": -0.01}, "cost_per_unit"),
        ],
    )
    def test_rejects(self, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            self._validate(**overrides)
        assert exc_info.value.field == field

    def test_zero_cost_allowed(self):
        assert self._validate(cost_per_unit=0.0) == "AMX-2025-01"


# ── Store Operations ──────────────────────────────────────────────────


@pytest.mark.asyncio
class TestCreateBatch:
    async def test_create_batch(self, test_db, product):
        batch = await create_batch(
            test_db,
            product_id=product.product_id,
            batch_number="AMX-001",
            quantity=200,
            expiry_date=date.today() + timedelta(days=200),
            supplier_reference=" PO-7781 ",
            cost_per_unit=0.35,
        )

        stored = await get_batch(test_db, batch.batch_id)
        assert stored.status == "ACTIVE"
        assert stored.initial_quantity == 200
        assert stored.current_quantity == 200
        assert stored.received_quantity == 200
        assert stored.supplier_reference == "PO-7781"
        assert stored.creation_seq == 1

    async def test_duplicate_batch_number_per_product(self, test_db, product):
        kwargs = {
            "product_id": product.product_id,
            "batch_number": "AMX-001",
            "quantity": 10,
            "expiry_date": date.today() + timedelta(days=100),
        }
        await create_batch(test_db, **kwargs)

        with pytest.raises(DuplicateBatchNumberError) as exc_info:
            await create_batch(test_db, **kwargs)

        assert isinstance(exc_info.value, ValidationError)
        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.field == "batch_number"

    async def test_same_number_on_other_product(self, test_db, product, second_product):
        expiry = date.today() + timedelta(days=100)
        await create_batch(test_db, product_id=product.product_id, batch_number="LOT-1", quantity=5, expiry_date=expiry)
        other = await create_batch(
            test_db, product_id=second_product.product_id, batch_number="LOT-1", quantity=5, expiry_date=expiry
        )
        assert other.creation_seq == 1

    async def test_creation_sequence_increments(self, test_db, product):
        expiry = date.today() + timedelta(days=100)
        first = await create_batch(test_db, product_id=product.product_id, batch_number="A", quantity=5, expiry_date=expiry)
        second = await create_batch(test_db, product_id=product.product_id, batch_number="B", quantity=5, expiry_date=expiry)
        assert (first.creation_seq, second.creation_seq) == (1, 2)

    async def test_unknown_product(self, test_db):
        with pytest.raises(NotFoundError):
            await create_batch(
                test_db,
                product_id=uuid.uuid4(),
                batch_number="X",
                quantity=1,
                expiry_date=date.today() + timedelta(days=10),
            )

    async def test_get_unknown_batch(self, test_db):
        with pytest.raises(NotFoundError) as exc_info:
            await get_batch(test_db, uuid.uuid4())
        assert exc_info.value.to_dict()["error"] == "not_found"

    async def test_list_unknown_product(self, test_db):
        with pytest.raises(NotFoundError) as exc_info:
            await list_batches_by_product(test_db, uuid.uuid4())
        assert exc_info.value.entity == "Product"

    async def test_update_batch_applies_mutation(self, test_db, product, make_batch):
        batch = await make_batch(product)

        updated = await update_batch(test_db, batch.batch_id, lambda b: setattr(b, "notes", "Store below 25C"))

        assert updated.notes == "Store below 25C"


# ── Derived Fields ────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestDerivedFields:
    async def test_derived_values(self, product, make_batch):
        batch = await make_batch(
            product,
            quantity=25,
            initial_quantity=100,
            cost_per_unit=2.5,
            expiry_date=TODAY + timedelta(days=20),
        )

        fields = derived_fields(batch, today=TODAY)

        assert fields["days_until_expiry"] == 20
        assert fields["utilization_percentage"] == 75.0
        assert fields["total_value"] == 62.5
        assert fields["expiry_bucket"] == "8-30 days"
        assert fields["expiry_severity"] == "WARNING"

    async def test_no_cost_means_no_value(self, product, make_batch):
        batch = await make_batch(product)
        assert derived_fields(batch)["total_value"] is None


# ── EXPIRED Transition ────────────────────────────────────────────────


@pytest.mark.asyncio
class TestExpireTransition:
    async def test_due_batch_expires(self, test_db, product, make_batch):
        batch = await make_batch(product, expiry_date=TODAY - timedelta(days=1))

        assert await expire_batch_if_due(test_db, batch.batch_id, TODAY) is True
        assert batch.status == "EXPIRED"

    async def test_expires_on_expiry_day(self, test_db, product, make_batch):
        batch = await make_batch(product, expiry_date=TODAY)
        assert await expire_batch_if_due(test_db, batch.batch_id, TODAY) is True

    @pytest.mark.parametrize("status", ["DEPLETED", "QUARANTINED", "EXPIRED"])
    async def test_not_applied_to_other_statuses(self, test_db, product, make_batch, status):
        batch = await make_batch(product, expiry_date=TODAY - timedelta(days=3), status=status)

        assert await expire_batch_if_due(test_db, batch.batch_id, TODAY) is False
        assert batch.status == status

    async def test_listing_does_not_expire_by_default(self, test_db, product, make_batch):
        batch = await make_batch(product, expiry_date=date.today() - timedelta(days=2))

        await list_batches_by_product(test_db, product.product_id)

        await test_db.refresh(batch)
        assert batch.status == "ACTIVE"

    async def test_expire_on_read(self, test_db, product, make_batch, monkeypatch):
        settings = get_settings().model_copy(update={"expire_on_read": True})
        monkeypatch.setattr(inventory.batches, "get_settings", lambda: settings)
        batch = await make_batch(product, expiry_date=date.today() - timedelta(days=2))

        (listed,) = await list_batches_by_product(test_db, product.product_id)

        assert listed.batch_id == batch.batch_id
        assert listed.status == "EXPIRED"
