"""
ScaleCheck Database Models

Weight discrepancy detection and dispute resolution.
Multi-tenant via company_id on all tables.

Tables:
  Core:
  1. companies                  - Seller accounts (tenant) + per-company thresholds
  2. shipments                  - Shipment aggregate root (declared package, route, billing)
  3. weight_observations        - Weight history per shipment (declared → billing)

  Disputes:
  4. weight_disputes            - One row per dispute; at most one open per shipment
  5. dispute_evidence           - Seller-uploaded artifacts with validation scores
  6. dispute_events             - Append-only dispute timeline
  7. settlements                - Exactly-once ledger settlement per dispute

  Learning & batch:
  8. sku_weight_masters         - Per (company, SKU) running weight statistics
  9. invoice_reconciliation_runs - Versioned carrier invoice reconciliation results
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
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


# Alias so Column(UUID(as_uuid=True)) calls read like the PostgreSQL type
def UUID(as_uuid=True):
    return GUID()


from sqlalchemy.orm import relationship

from db.session import Base

DISPUTE_STATUSES = (
    "pending",
    "evidence_submitted",
    "under_review",
    "accepted",
    "resolved_in_favor",
    "resolved_against",
    "partial_resolution",
    "auto_accepted",
    "escalated",
    "withdrawn",
)

DISPUTE_CATEGORIES = (
    "packing_material",
    "volumetric",
    "scanner_error",
    "shape_distortion",
    "manual_error",
    "fraud_suspected",
    "legitimate_difference",
    "invoice_discrepancy",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ─── 1. Companies ──────────────────────────────────────────────────────────


class Company(Base):
    __tablename__ = "companies"

    company_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="active")

    # Per-company detection tuning; NULL falls back to settings defaults
    weight_threshold_pct = Column(Float)
    high_value_threshold = Column(Float)

    # Fraud analysis output, written by workers/fraud.py
    fraud_score = Column(Float)
    fraud_signals = Column(JSON)
    fraud_checked_at = Column(DateTime)
    suspicious_fraud = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'suspended')", name="ck_company_status"),
        CheckConstraint("weight_threshold_pct IS NULL OR weight_threshold_pct >= 0", name="ck_company_threshold"),
    )

    shipments = relationship("Shipment", back_populates="company", cascade="all, delete-orphan")


# ─── 2. Shipments ──────────────────────────────────────────────────────────


class Shipment(Base):
    __tablename__ = "shipments"

    shipment_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.company_id"), nullable=False)
    order_ref = Column(String(100))
    tracking_id = Column(String(64), nullable=False, unique=True)
    carrier = Column(String(50), nullable=False)
    service_type = Column(String(50))
    status = Column(String(30), nullable=False, default="created")

    # Route + payment (held constant across both pricing quotes)
    origin_pincode = Column(String(10), nullable=False)
    destination_pincode = Column(String(10), nullable=False)
    payment_mode = Column(String(10), nullable=False, default="prepaid")
    order_value = Column(Float, nullable=False, default=0.0)
    dim_divisor = Column(Integer)

    # Declared package (seller-entered)
    declared_weight_kg = Column(Float, nullable=False)
    declared_length_cm = Column(Float)
    declared_width_cm = Column(Float)
    declared_height_cm = Column(Float)
    sku = Column(String(100))
    item_count = Column(Integer, nullable=False, default=1)
    shipping_cost = Column(Float)

    # Weight verification state
    weight_status = Column(String(20), nullable=False, default="unverified")
    billing_weight_kg = Column(Float)
    verified_at = Column(DateTime)
    # Set once the shipment has fed its SKU baseline
    sku_learned_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_shipments_company", "company_id"),
        Index("ix_shipments_company_created", "company_id", "created_at"),
        CheckConstraint("declared_weight_kg > 0", name="ck_shipment_declared_positive"),
        CheckConstraint("payment_mode IN ('prepaid', 'cod')", name="ck_shipment_payment_mode"),
        CheckConstraint(
            "weight_status IN ('unverified', 'verified', 'disputed', 'resolved')",
            name="ck_shipment_weight_status",
        ),
        CheckConstraint(
            "status IN ('created', 'picked_up', 'in_transit', 'out_for_delivery', 'delivered', 'rto', 'cancelled')",
            name="ck_shipment_status",
        ),
    )

    company = relationship("Company", back_populates="shipments")
    observations = relationship(
        "WeightObservation",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by="WeightObservation.observed_at",
    )


# ─── 3. Weight Observations ────────────────────────────────────────────────


class WeightObservation(Base):
    __tablename__ = "weight_observations"

    observation_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shipment_id = Column(UUID(as_uuid=True), ForeignKey("shipments.shipment_id"), nullable=False)
    stage = Column(String(20), nullable=False)
    value_kg = Column(Float, nullable=False)
    length_cm = Column(Float)
    width_cm = Column(Float)
    height_cm = Column(Float)
    source = Column(String(20), nullable=False)
    location = Column(String(255))
    external_ref = Column(String(100))
    observed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_weight_obs_shipment", "shipment_id", "stage"),
        CheckConstraint("value_kg > 0", name="ck_weight_obs_positive"),
        CheckConstraint(
            "stage IN ('declared', 'packed', 'applied', 'scanned', 'billing')",
            name="ck_weight_obs_stage",
        ),
        CheckConstraint(
            "source IN ('manual', 'webhook', 'invoice', 'tracking_api')",
            name="ck_weight_obs_source",
        ),
    )

    shipment = relationship("Shipment", back_populates="observations")


# ─── 4. Weight Disputes ────────────────────────────────────────────────────


class WeightDispute(Base):
    __tablename__ = "weight_disputes"

    dispute_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    dispute_code = Column(String(20), nullable=False, unique=True)  # WD-YYYYMMDD-XXXXX
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.company_id"), nullable=False)
    # Weak reference back to the shipment aggregate (no back-populated relationship)
    shipment_id = Column(UUID(as_uuid=True), ForeignKey("shipments.shipment_id"), nullable=False)
    # Equals shipment_id while the dispute is non-terminal, NULL afterwards.
    # The unique constraint enforces "at most one open dispute per shipment".
    open_shipment_id = Column(UUID(as_uuid=True), unique=True)

    source = Column(String(20), nullable=False, default="carrier_webhook")
    reconciliation_run_id = Column(UUID(as_uuid=True), ForeignKey("invoice_reconciliation_runs.run_id"))

    # Discrepancy (chargeable weights, kg)
    declared_weight_kg = Column(Float, nullable=False)
    actual_weight_kg = Column(Float, nullable=False)
    difference_kg = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    threshold_pct = Column(Float, nullable=False)
    reported_dead_weight_kg = Column(Float)
    reported_volumetric_kg = Column(Float)

    # Financial impact
    declared_cost = Column(Float, nullable=False)
    actual_cost = Column(Float, nullable=False)
    cost_difference = Column(Float, nullable=False)
    charge_direction = Column(String(10), nullable=False)
    ratecard_version = Column(String(64))
    calculation_method = Column(String(20), nullable=False, default="quote")
    zone = Column(String(10))

    status = Column(String(30), nullable=False, default="pending")
    category = Column(String(30), nullable=False)
    priority = Column(String(10), nullable=False, default="low")

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    auto_resolve_at = Column(DateTime, nullable=False)

    # Carrier submission
    submitted_to_courier_at = Column(DateTime)
    submission_method = Column(String(20))
    courier_reference = Column(String(100))
    submission_attempts = Column(Integer, nullable=False, default=0)

    # Resolution (NULL until terminal)
    resolution_type = Column(String(30))
    final_weight_kg = Column(Float)
    final_cost = Column(Float)
    refund_amount = Column(Float)
    debit_amount = Column(Float)
    resolved_by = Column(String(100))
    resolved_at = Column(DateTime)
    resolution_notes = Column(Text)

    __table_args__ = (
        Index("ix_weight_disputes_company_created", "company_id", "created_at"),
        Index("ix_weight_disputes_status_due", "status", "auto_resolve_at"),
        Index("ix_weight_disputes_shipment", "shipment_id"),
        Index("ix_weight_disputes_courier_ref", "courier_reference"),
        CheckConstraint(_in_clause("status", DISPUTE_STATUSES), name="ck_dispute_status"),
        CheckConstraint(_in_clause("category", DISPUTE_CATEGORIES), name="ck_dispute_category"),
        CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name="ck_dispute_priority"),
        CheckConstraint("source IN ('carrier_webhook', 'courier_invoice')", name="ck_dispute_source"),
        CheckConstraint("calculation_method IN ('quote', 'fallback_zone')", name="ck_dispute_calc_method"),
        CheckConstraint("charge_direction IN ('debit', 'credit', 'none')", name="ck_dispute_direction"),
    )

    evidence = relationship(
        "DisputeEvidence",
        back_populates="dispute",
        cascade="all, delete-orphan",
        order_by="DisputeEvidence.submitted_at",
    )
    events = relationship(
        "DisputeEvent",
        back_populates="dispute",
        cascade="all, delete-orphan",
        order_by="DisputeEvent.created_at",
    )


# ─── 5. Dispute Evidence ───────────────────────────────────────────────────


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    evidence_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    dispute_id = Column(UUID(as_uuid=True), ForeignKey("weight_disputes.dispute_id"), nullable=False)
    kind = Column(String(20), nullable=False, default="photo")
    url = Column(Text, nullable=False)
    captured_at = Column(DateTime)
    notes = Column(Text)

    # Validation result
    has_scale = Column(Boolean, nullable=False, default=False)
    has_ruler = Column(Boolean, nullable=False, default=False)
    has_awb = Column(Boolean, nullable=False, default=False)
    timestamp_fresh = Column(Boolean, nullable=False, default=False)
    quality_score = Column(Float, nullable=False, default=0.0)
    is_valid = Column(Boolean, nullable=False, default=False)
    suggestions = Column(JSON)

    submitted_by = Column(String(100))
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_dispute_evidence_dispute", "dispute_id"),
        CheckConstraint("kind IN ('photo', 'video', 'document')", name="ck_evidence_kind"),
        CheckConstraint("quality_score >= 0 AND quality_score <= 100", name="ck_evidence_quality_range"),
    )

    dispute = relationship("WeightDispute", back_populates="evidence")


# ─── 6. Dispute Events (timeline) ──────────────────────────────────────────


class DisputeEvent(Base):
    __tablename__ = "dispute_events"

    event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    dispute_id = Column(UUID(as_uuid=True), ForeignKey("weight_disputes.dispute_id"), nullable=False)
    from_status = Column(String(30))
    to_status = Column(String(30))
    actor = Column(String(100), nullable=False, default="system")
    action = Column(String(255), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_dispute_events_dispute", "dispute_id", "created_at"),)

    dispute = relationship("WeightDispute", back_populates="events")


# ─── 7. Settlements ────────────────────────────────────────────────────────


class Settlement(Base):
    __tablename__ = "settlements"

    settlement_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    dispute_id = Column(UUID(as_uuid=True), ForeignKey("weight_disputes.dispute_id"), nullable=False, unique=True)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.company_id"), nullable=False)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    direction = Column(String(10), nullable=False)
    amount = Column(Float, nullable=False)
    reason = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    ledger_reference = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    applied_at = Column(DateTime)

    __table_args__ = (
        Index("ix_settlements_status", "status"),
        CheckConstraint("direction IN ('credit', 'debit', 'none')", name="ck_settlement_direction"),
        CheckConstraint("amount >= 0", name="ck_settlement_amount_positive"),
        CheckConstraint("status IN ('pending', 'applied', 'failed', 'skipped')", name="ck_settlement_status"),
    )


# ─── 8. SKU Weight Masters ─────────────────────────────────────────────────


class SKUWeightMaster(Base):
    __tablename__ = "sku_weight_masters"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.company_id"), nullable=False)
    sku = Column(String(100), nullable=False)
    product_name = Column(String(255))

    # Welford running statistics
    sample_count = Column(Integer, nullable=False, default=0)
    mean_kg = Column(Float, nullable=False, default=0.0)
    m2 = Column(Float, nullable=False, default=0.0)
    stddev_kg = Column(Float, nullable=False, default=0.0)
    min_kg = Column(Float)
    max_kg = Column(Float)

    standard_weight_kg = Column(Float)
    confidence = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="learning")

    # Explicit override
    freeze_enabled = Column(Boolean, nullable=False, default=False)
    frozen_weight_kg = Column(Float)
    freeze_reason = Column(Text)
    frozen_by = Column(String(100))
    frozen_at = Column(DateTime)
    freeze_expires_at = Column(DateTime)

    # Dispute feedback
    total_disputes = Column(Integer, nullable=False, default=0)
    disputes_seller_favor = Column(Integer, nullable=False, default=0)
    disputes_carrier_favor = Column(Integer, nullable=False, default=0)
    last_dispute_at = Column(DateTime)

    first_sample_at = Column(DateTime)
    last_sample_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("company_id", "sku", name="uq_sku_master_per_company"),
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="ck_sku_confidence_range"),
        CheckConstraint("status IN ('learning', 'active')", name="ck_sku_status"),
    )


# ─── 9. Invoice Reconciliation Runs ────────────────────────────────────────


class InvoiceReconciliationRun(Base):
    __tablename__ = "invoice_reconciliation_runs"

    run_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    carrier = Column(String(50), nullable=False)
    billing_month = Column(String(7), nullable=False)  # YYYY-MM
    version = Column(Integer, nullable=False, default=1)
    source_filename = Column(String(255))
    status = Column(String(20), nullable=False, default="running")

    total_rows = Column(Integer, nullable=False, default=0)
    matched = Column(Integer, nullable=False, default=0)
    unmatched = Column(Integer, nullable=False, default=0)
    discrepant = Column(Integer, nullable=False, default=0)
    disputes_created = Column(Integer, nullable=False, default=0)
    skipped_existing = Column(Integer, nullable=False, default=0)
    failed_rows = Column(Integer, nullable=False, default=0)

    summary = Column(JSON)
    report_ref = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("carrier", "billing_month", "version", name="uq_reconciliation_run_version"),
        CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_reconciliation_status"),
    )
