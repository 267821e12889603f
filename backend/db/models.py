"""
PharmaTrack Database Models

Tables:
  1. products            - Product catalog that batches belong to
  2. batches             - Per-batch stock with expiry dates (never deleted)
  3. stock_adjustments   - Append-only ledger of every batch quantity/status change
  4. expiry_check_runs   - One record per expiry check execution
  5. expiry_alerts       - Alerts produced by an expiry check
  6. expiry_alert_configs - Configurable alert tiers (threshold, roles to notify)
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

BATCH_STATUSES = ("ACTIVE", "DEPLETED", "EXPIRED", "QUARANTINED")
ADJUSTMENT_TYPES = ("ADD", "CONSUME", "ADJUST", "QUARANTINE", "RELEASE", "DISPOSE")
RUN_STATUSES = ("RUNNING", "COMPLETED", "FAILED")
TRIGGER_KINDS = ("SCHEDULED", "MANUAL")
ALERT_SEVERITIES = ("CRITICAL", "WARNING", "INFO")
ALERT_STATUSES = ("open", "acknowledged", "resolved")
NOTIFY_ROLES = ("HOSPITAL_MANAGER", "PHARMACY_STAFF", "PROCUREMENT_OFFICER")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ─── 1. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    batches = relationship("Batch", back_populates="product")


# ─── 2. Batches ─────────────────────────────────────────────────────────────


class Batch(Base):
    __tablename__ = "batches"

    batch_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    batch_number = Column(String(100), nullable=False)
    # Quantity the batch was created with; the ledger replays from here.
    received_quantity = Column(Integer, nullable=False)
    # Utilization baseline; an ADD or ADJUST past it re-bases it, so
    # current_quantity never exceeds it.
    initial_quantity = Column(Integer, nullable=False)
    current_quantity = Column(Integer, nullable=False)
    expiry_date = Column(Date, nullable=False)
    manufacture_date = Column(Date)
    supplier_reference = Column(String(255))
    cost_per_unit = Column(Float)
    status = Column(String(20), nullable=False, default="ACTIVE")
    notes = Column(Text)
    creation_seq = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("product_id", "batch_number", name="uq_batch_product_number"),
        UniqueConstraint("product_id", "creation_seq", name="uq_batch_product_seq"),
        Index("ix_batches_product_expiry", "product_id", "expiry_date"),
        Index("ix_batches_status_expiry", "status", "expiry_date"),
        CheckConstraint("current_quantity >= 0", name="ck_batch_qty_non_negative"),
        CheckConstraint("initial_quantity >= 0", name="ck_batch_initial_non_negative"),
        CheckConstraint("current_quantity <= initial_quantity", name="ck_batch_qty_within_baseline"),
        CheckConstraint("cost_per_unit IS NULL OR cost_per_unit >= 0", name="ck_batch_cost_non_negative"),
        CheckConstraint(_in_list("status", BATCH_STATUSES), name="ck_batch_status"),
    )

    product = relationship("Product", back_populates="batches")
    adjustments = relationship(
        "StockAdjustment",
        back_populates="batch",
        order_by="StockAdjustment.sequence",
    )


# ─── 3. Stock Adjustments ──────────────────────────────────────────────────


class StockAdjustment(Base):
    """Immutable ledger row. Written once by the adjustment processor."""

    __tablename__ = "stock_adjustments"

    adjustment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    batch_id = Column(GUID(), ForeignKey("batches.batch_id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    adjustment_type = Column(String(20), nullable=False)
    quantity = Column(Integer)
    previous_quantity = Column(Integer, nullable=False)
    resulting_quantity = Column(Integer, nullable=False)
    previous_status = Column(String(20), nullable=False)
    resulting_status = Column(String(20), nullable=False)
    reason = Column(Text, nullable=False)
    actor = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("batch_id", "sequence", name="uq_adjustment_batch_seq"),
        CheckConstraint(_in_list("adjustment_type", ADJUSTMENT_TYPES), name="ck_adjustment_type"),
        CheckConstraint("resulting_quantity >= 0", name="ck_adjustment_result_non_negative"),
    )

    batch = relationship("Batch", back_populates="adjustments")


# ─── 4. Expiry Check Runs ──────────────────────────────────────────────────


class ExpiryCheckRun(Base):
    __tablename__ = "expiry_check_runs"

    run_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    check_date = Column(Date, nullable=False)
    # ISO date for the day's non-forced run; NULL for forced runs and
    # released when a run fails. Unique, so only one claimant per day.
    claim_key = Column(String(10), unique=True)
    status = Column(String(20), nullable=False, default="RUNNING")
    trigger_kind = Column(String(20), nullable=False)
    forced = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(255))
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    execution_time_ms = Column(Integer)
    products_checked = Column(Integer, nullable=False, default=0)
    batches_checked = Column(Integer, nullable=False, default=0)
    alerts_generated = Column(Integer, nullable=False, default=0)
    alerts_by_severity = Column(JSON, default=dict)
    alerts_by_days_range = Column(JSON, default=dict)
    error_message = Column(Text)

    __table_args__ = (
        Index("ix_expiry_runs_date", "check_date", "started_at"),
        CheckConstraint(_in_list("status", RUN_STATUSES), name="ck_expiry_run_status"),
        CheckConstraint(_in_list("trigger_kind", TRIGGER_KINDS), name="ck_expiry_run_trigger"),
    )

    alerts = relationship("ExpiryAlert", back_populates="run")


# ─── 5. Expiry Alerts ──────────────────────────────────────────────────────


class ExpiryAlert(Base):
    __tablename__ = "expiry_alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(GUID(), ForeignKey("expiry_check_runs.run_id"))
    batch_id = Column(GUID(), ForeignKey("batches.batch_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    alert_type = Column(String(20), nullable=False)
    severity = Column(String(20), nullable=False)
    days_range = Column(String(20), nullable=False)
    days_until_expiry = Column(Integer, nullable=False)
    quantity_affected = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="open")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(255))
    resolved_at = Column(DateTime)
    resolved_by = Column(String(255))
    notes = Column(Text)
    # Matching alert tier at generation time; NULL when no active tier covers it
    tier_id = Column(GUID(), ForeignKey("expiry_alert_configs.config_id", ondelete="SET NULL"))
    tier_name = Column(String(100))
    notify_roles = Column(JSON, default=list)

    __table_args__ = (
        UniqueConstraint("run_id", "batch_id", "days_range", name="uq_expiry_alert_run_batch_range"),
        Index("ix_expiry_alerts_status", "status", "severity"),
        CheckConstraint("alert_type IN ('days_range', 'expired')", name="ck_expiry_alert_type"),
        CheckConstraint(_in_list("severity", ALERT_SEVERITIES), name="ck_expiry_alert_severity"),
        CheckConstraint(_in_list("status", ALERT_STATUSES), name="ck_expiry_alert_status"),
    )

    run = relationship("ExpiryCheckRun", back_populates="alerts")

    @property
    def is_deliverable(self) -> bool:
        """Open alerts are eligible for downstream notification delivery."""
        return self.status == "open"


# ─── 6. Expiry Alert Configs ───────────────────────────────────────────────


class ExpiryAlertConfig(Base):
    """
    Alert tier: batches within ``days_before_expiry`` days are routed to
    ``notify_roles``. Tiers tag alerts; they do not change the fixed
    days-range buckets or severity counts of a check run.
    """

    __tablename__ = "expiry_alert_configs"

    config_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tier_name = Column(String(100), nullable=False, unique=True)
    days_before_expiry = Column(Integer, nullable=False)
    severity = Column(String(20), nullable=False, default="WARNING")
    description = Column(Text)
    active = Column(Boolean, nullable=False, default=True)
    notify_roles = Column(JSON, nullable=False, default=list)
    sort_order = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("days_before_expiry BETWEEN 1 AND 365", name="ck_alert_config_days"),
        CheckConstraint(_in_list("severity", ALERT_SEVERITIES), name="ck_alert_config_severity"),
    )
