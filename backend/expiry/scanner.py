"""
Expiry Risk Scanner — classifies every scannable batch against one fixed
reference date.

Scannable means not DEPLETED and not QUARANTINED. Each batch gets
days-until-expiry, a days-range bucket and a severity from
expiry.classification. Batches at or past their expiry date land in the
"expired" pseudo-bucket and are moved to EXPIRED; that status change is the
only write the scan performs.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Batch, Product
from expiry.classification import EXPIRED_BUCKET, classify_expiry, empty_bucket_counts
from inventory.batches import expire_batch_if_due, is_expiry_due

logger = structlog.get_logger()

SCANNABLE_EXCLUDED_STATUSES = ("DEPLETED", "QUARANTINED")


@dataclass(frozen=True)
class BatchRisk:
    batch_id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    product_sku: str
    batch_number: str
    expiry_date: date
    quantity: int
    cost_per_unit: float | None
    days_until_expiry: int
    bucket: str
    severity: str

    @property
    def is_expired(self) -> bool:
        return self.bucket == EXPIRED_BUCKET

    @property
    def value_at_risk(self) -> float:
        return round(self.quantity * (self.cost_per_unit or 0.0), 2)


@dataclass
class ScanResult:
    reference_date: date
    risks: list[BatchRisk] = field(default_factory=list)
    newly_expired: list[uuid.UUID] = field(default_factory=list)

    @property
    def products_checked(self) -> int:
        return len({risk.product_id for risk in self.risks})

    @property
    def batches_checked(self) -> int:
        return len(self.risks)

    @property
    def expired(self) -> list[BatchRisk]:
        return [risk for risk in self.risks if risk.is_expired]

    def bucket_counts(self) -> dict[str, int]:
        """Counts per days range. Expired batches are reported separately."""
        counts = empty_bucket_counts()
        for risk in self.risks:
            if not risk.is_expired:
                counts[risk.bucket] += 1
        return counts


async def load_scannable_batches(db: AsyncSession) -> list[tuple[Batch, Product]]:
    result = await db.execute(
        select(Batch, Product)
        .join(Product, Product.product_id == Batch.product_id)
        .where(Batch.status.notin_(SCANNABLE_EXCLUDED_STATUSES))
        .order_by(Batch.expiry_date, Batch.product_id, Batch.creation_seq)
    )
    return [(row.Batch, row.Product) for row in result.all()]


def classify_batch(batch: Batch, product: Product, reference_date: date) -> BatchRisk:
    classification = classify_expiry(batch.expiry_date, reference_date)
    return BatchRisk(
        batch_id=batch.batch_id,
        product_id=batch.product_id,
        product_name=product.name,
        product_sku=product.sku,
        batch_number=batch.batch_number,
        expiry_date=batch.expiry_date,
        quantity=batch.current_quantity,
        cost_per_unit=batch.cost_per_unit,
        days_until_expiry=classification.days_until_expiry,
        bucket=classification.bucket,
        severity=classification.severity,
    )


async def scan_expiry_risk(
    db: AsyncSession,
    reference_date: date | None = None,
    apply_transitions: bool = True,
) -> ScanResult:
    """
    Classify all scannable batches as of ``reference_date`` (default today).

    With ``apply_transitions`` the scan moves due batches to EXPIRED, one
    serialized write per batch.
    """
    reference_date = reference_date or date.today()
    rows = await load_scannable_batches(db)
    scan = ScanResult(reference_date=reference_date)

    for batch, product in rows:
        risk = classify_batch(batch, product, reference_date)
        scan.risks.append(risk)
        if apply_transitions and is_expiry_due(batch, reference_date):
            if await expire_batch_if_due(db, batch.batch_id, reference_date):
                scan.newly_expired.append(batch.batch_id)

    logger.info(
        "expiry.scan.completed",
        reference_date=reference_date.isoformat(),
        batches_checked=scan.batches_checked,
        products_checked=scan.products_checked,
        expired=len(scan.expired),
        newly_expired=len(scan.newly_expired),
    )
    return scan
