"""
Tests for the Expiry Risk Scanner.
"""

from datetime import date

import pytest

from expiry.scanner import scan_expiry_risk

REFERENCE = date(2025, 1, 10)


@pytest.mark.asyncio
class TestScanExpiryRisk:
    async def test_classifies_against_reference_date(self, test_db, product, make_batch):
        soon = await make_batch(product, batch_number="SOON", expiry_date=date(2025, 1, 15))
        gone = await make_batch(product, batch_number="GONE", expiry_date=date(2025, 1, 9))

        scan = await scan_expiry_risk(test_db, REFERENCE)

        risks = {risk.batch_id: risk for risk in scan.risks}
        assert risks[soon.batch_id].days_until_expiry == 5
        assert risks[soon.batch_id].bucket == "0-7 days"
        assert risks[soon.batch_id].severity == "CRITICAL"
        assert risks[gone.batch_id].is_expired

        counts = scan.bucket_counts()
        assert counts["0-7 days"] == 1
        assert sum(counts.values()) == 1
        assert [risk.batch_id for risk in scan.expired] == [gone.batch_id]

    async def test_scan_moves_due_batches_to_expired(self, test_db, product, make_batch):
        gone = await make_batch(product, expiry_date=date(2025, 1, 9))
        fresh = await make_batch(product, expiry_date=date(2025, 6, 1))

        scan = await scan_expiry_risk(test_db, REFERENCE)

        assert scan.newly_expired == [gone.batch_id]
        await test_db.refresh(gone)
        await test_db.refresh(fresh)
        assert gone.status == "EXPIRED"
        assert fresh.status == "ACTIVE"

    async def test_already_expired_not_transitioned_again(self, test_db, product, make_batch):
        await make_batch(product, expiry_date=date(2024, 12, 1), status="EXPIRED")

        scan = await scan_expiry_risk(test_db, REFERENCE)

        assert scan.newly_expired == []
        assert len(scan.expired) == 1

    async def test_skips_depleted_and_quarantined(self, test_db, product, make_batch):
        await make_batch(product, expiry_date=date(2025, 1, 12), status="QUARANTINED")
        await make_batch(product, expiry_date=date(2025, 1, 5), quantity=0, status="DEPLETED")

        scan = await scan_expiry_risk(test_db, REFERENCE)

        assert scan.batches_checked == 0
        assert scan.products_checked == 0

    async def test_read_only_scan(self, test_db, product, make_batch):
        gone = await make_batch(product, expiry_date=date(2025, 1, 1))

        scan = await scan_expiry_risk(test_db, REFERENCE, apply_transitions=False)

        assert len(scan.expired) == 1
        assert scan.newly_expired == []
        await test_db.refresh(gone)
        assert gone.status == "ACTIVE"

    async def test_counts_distinct_products(self, test_db, product, second_product, make_batch):
        await make_batch(product, expiry_date=date(2025, 2, 1))
        await make_batch(product, expiry_date=date(2025, 3, 1))
        await make_batch(second_product, expiry_date=date(2025, 5, 1))

        scan = await scan_expiry_risk(test_db, REFERENCE)

        assert scan.batches_checked == 3
        assert scan.products_checked == 2

    async def test_value_at_risk(self, test_db, product, make_batch):
        await make_batch(product, quantity=40, cost_per_unit=1.25, expiry_date=date(2025, 1, 1))

        scan = await scan_expiry_risk(test_db, REFERENCE)

        assert scan.expired[0].value_at_risk == 50.0
