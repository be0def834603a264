"""
Initial schema - ScaleCheck tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

DISPUTE_STATUSES = (
    "'pending', 'evidence_submitted', 'under_review', 'accepted', 'resolved_in_favor', "
    "'resolved_against', 'partial_resolution', 'auto_accepted', 'escalated', 'withdrawn'"
)
DISPUTE_CATEGORIES = (
    "'packing_material', 'volumetric', 'scanner_error', 'shape_distortion', 'manual_error', "
    "'fraud_suspected', 'legitimate_difference', 'invoice_discrepancy'"
)


def _pk(name: str) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # 1. Companies
    op.create_table(
        "companies",
        _pk("company_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("weight_threshold_pct", sa.Float),
        sa.Column("high_value_threshold", sa.Float),
        sa.Column("fraud_score", sa.Float),
        sa.Column("fraud_signals", sa.JSON),
        sa.Column("fraud_checked_at", sa.DateTime),
        sa.Column("suspicious_fraud", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("status IN ('active', 'inactive', 'trial', 'suspended')", name="ck_company_status"),
        sa.CheckConstraint("weight_threshold_pct IS NULL OR weight_threshold_pct >= 0", name="ck_company_threshold"),
    )

    # 2. Shipments
    op.create_table(
        "shipments",
        _pk("shipment_id"),
        sa.Column("company_id", UUID(as_uuid=True), sa.ForeignKey("companies.company_id"), nullable=False),
        sa.Column("order_ref", sa.String(100)),
        sa.Column("tracking_id", sa.String(64), nullable=False, unique=True),
        sa.Column("carrier", sa.String(50), nullable=False),
        sa.Column("service_type", sa.String(50)),
        sa.Column("status", sa.String(30), nullable=False, server_default="created"),
        sa.Column("origin_pincode", sa.String(10), nullable=False),
        sa.Column("destination_pincode", sa.String(10), nullable=False),
        sa.Column("payment_mode", sa.String(10), nullable=False, server_default="prepaid"),
        sa.Column("order_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("dim_divisor", sa.Integer),
        sa.Column("declared_weight_kg", sa.Float, nullable=False),
        sa.Column("declared_length_cm", sa.Float),
        sa.Column("declared_width_cm", sa.Float),
        sa.Column("declared_height_cm", sa.Float),
        sa.Column("sku", sa.String(100)),
        sa.Column("item_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("shipping_cost", sa.Float),
        sa.Column("weight_status", sa.String(20), nullable=False, server_default="unverified"),
        sa.Column("billing_weight_kg", sa.Float),
        sa.Column("verified_at", sa.DateTime),
        sa.Column("sku_learned_at", sa.DateTime),
        *_timestamps(),
        sa.CheckConstraint("declared_weight_kg > 0", name="ck_shipment_declared_positive"),
        sa.CheckConstraint("payment_mode IN ('prepaid', 'cod')", name="ck_shipment_payment_mode"),
        sa.CheckConstraint(
            "weight_status IN ('unverified', 'verified', 'disputed', 'resolved')", name="ck_shipment_weight_status"
        ),
        sa.CheckConstraint(
            "status IN ('created', 'picked_up', 'in_transit', 'out_for_delivery', 'delivered', 'rto', 'cancelled')",
            name="ck_shipment_status",
        ),
    )
    op.create_index("ix_shipments_company", "shipments", ["company_id"])
    op.create_index("ix_shipments_company_created", "shipments", ["company_id", "created_at"])

    # 3. Weight Observations
    op.create_table(
        "weight_observations",
        _pk("observation_id"),
        sa.Column("shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.shipment_id"), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False),
        sa.Column("value_kg", sa.Float, nullable=False),
        sa.Column("length_cm", sa.Float),
        sa.Column("width_cm", sa.Float),
        sa.Column("height_cm", sa.Float),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("location", sa.String(255)),
        sa.Column("external_ref", sa.String(100)),
        sa.Column("observed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("recorded_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("value_kg > 0", name="ck_weight_obs_positive"),
        sa.CheckConstraint(
            "stage IN ('declared', 'packed', 'applied', 'scanned', 'billing')", name="ck_weight_obs_stage"
        ),
        sa.CheckConstraint(
            "source IN ('manual', 'webhook', 'invoice', 'tracking_api')", name="ck_weight_obs_source"
        ),
    )
    op.create_index("ix_weight_obs_shipment", "weight_observations", ["shipment_id", "stage"])

    # 4. Invoice Reconciliation Runs (referenced by weight_disputes)
    op.create_table(
        "invoice_reconciliation_runs",
        _pk("run_id"),
        sa.Column("carrier", sa.String(50), nullable=False),
        sa.Column("billing_month", sa.String(7), nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("source_filename", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("total_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("matched", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unmatched", sa.Integer, nullable=False, server_default="0"),
        sa.Column("discrepant", sa.Integer, nullable=False, server_default="0"),
        sa.Column("disputes_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_existing", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("summary", sa.JSON),
        sa.Column("report_ref", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
        sa.UniqueConstraint("carrier", "billing_month", "version", name="uq_reconciliation_run_version"),
        sa.CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_reconciliation_status"),
    )

    # 5. Weight Disputes
    op.create_table(
        "weight_disputes",
        _pk("dispute_id"),
        sa.Column("dispute_code", sa.String(20), nullable=False, unique=True),
        sa.Column("company_id", UUID(as_uuid=True), sa.ForeignKey("companies.company_id"), nullable=False),
        sa.Column("shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.shipment_id"), nullable=False),
        # Set only while the dispute is open; unique => one open dispute per shipment
        sa.Column("open_shipment_id", UUID(as_uuid=True), unique=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="carrier_webhook"),
        sa.Column(
            "reconciliation_run_id", UUID(as_uuid=True), sa.ForeignKey("invoice_reconciliation_runs.run_id")
        ),
        sa.Column("declared_weight_kg", sa.Float, nullable=False),
        sa.Column("actual_weight_kg", sa.Float, nullable=False),
        sa.Column("difference_kg", sa.Float, nullable=False),
        sa.Column("percentage", sa.Float, nullable=False),
        sa.Column("threshold_pct", sa.Float, nullable=False),
        sa.Column("reported_dead_weight_kg", sa.Float),
        sa.Column("reported_volumetric_kg", sa.Float),
        sa.Column("declared_cost", sa.Float, nullable=False),
        sa.Column("actual_cost", sa.Float, nullable=False),
        sa.Column("cost_difference", sa.Float, nullable=False),
        sa.Column("charge_direction", sa.String(10), nullable=False),
        sa.Column("ratecard_version", sa.String(64)),
        sa.Column("calculation_method", sa.String(20), nullable=False, server_default="quote"),
        sa.Column("zone", sa.String(10)),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False, server_default="low"),
        *_timestamps(),
        sa.Column("auto_resolve_at", sa.DateTime, nullable=False),
        sa.Column("submitted_to_courier_at", sa.DateTime),
        sa.Column("submission_method", sa.String(20)),
        sa.Column("courier_reference", sa.String(100)),
        sa.Column("submission_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("resolution_type", sa.String(30)),
        sa.Column("final_weight_kg", sa.Float),
        sa.Column("final_cost", sa.Float),
        sa.Column("refund_amount", sa.Float),
        sa.Column("debit_amount", sa.Float),
        sa.Column("resolved_by", sa.String(100)),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("resolution_notes", sa.Text),
        sa.CheckConstraint(f"status IN ({DISPUTE_STATUSES})", name="ck_dispute_status"),
        sa.CheckConstraint(f"category IN ({DISPUTE_CATEGORIES})", name="ck_dispute_category"),
        sa.CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name="ck_dispute_priority"),
        sa.CheckConstraint("source IN ('carrier_webhook', 'courier_invoice')", name="ck_dispute_source"),
        sa.CheckConstraint("calculation_method IN ('quote', 'fallback_zone')", name="ck_dispute_calc_method"),
        sa.CheckConstraint("charge_direction IN ('debit', 'credit', 'none')", name="ck_dispute_direction"),
    )
    op.create_index("ix_weight_disputes_company_created", "weight_disputes", ["company_id", "created_at"])
    op.create_index("ix_weight_disputes_status_due", "weight_disputes", ["status", "auto_resolve_at"])
    op.create_index("ix_weight_disputes_shipment", "weight_disputes", ["shipment_id"])
    op.create_index("ix_weight_disputes_courier_ref", "weight_disputes", ["courier_reference"])

    # 6. Dispute Evidence
    op.create_table(
        "dispute_evidence",
        _pk("evidence_id"),
        sa.Column("dispute_id", UUID(as_uuid=True), sa.ForeignKey("weight_disputes.dispute_id"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False, server_default="photo"),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("captured_at", sa.DateTime),
        sa.Column("notes", sa.Text),
        sa.Column("has_scale", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("has_ruler", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("has_awb", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("timestamp_fresh", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("quality_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_valid", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("suggestions", sa.JSON),
        sa.Column("submitted_by", sa.String(100)),
        sa.Column("submitted_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("kind IN ('photo', 'video', 'document')", name="ck_evidence_kind"),
        sa.CheckConstraint("quality_score >= 0 AND quality_score <= 100", name="ck_evidence_quality_range"),
    )
    op.create_index("ix_dispute_evidence_dispute", "dispute_evidence", ["dispute_id"])

    # 7. Dispute Events
    op.create_table(
        "dispute_events",
        _pk("event_id"),
        sa.Column("dispute_id", UUID(as_uuid=True), sa.ForeignKey("weight_disputes.dispute_id"), nullable=False),
        sa.Column("from_status", sa.String(30)),
        sa.Column("to_status", sa.String(30)),
        sa.Column("actor", sa.String(100), nullable=False, server_default="system"),
        sa.Column("action", sa.String(255), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_dispute_events_dispute", "dispute_events", ["dispute_id", "created_at"])

    # 8. Settlements
    op.create_table(
        "settlements",
        _pk("settlement_id"),
        sa.Column(
            "dispute_id", UUID(as_uuid=True), sa.ForeignKey("weight_disputes.dispute_id"), nullable=False, unique=True
        ),
        sa.Column("company_id", UUID(as_uuid=True), sa.ForeignKey("companies.company_id"), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("ledger_reference", sa.String(100)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("applied_at", sa.DateTime),
        sa.CheckConstraint("direction IN ('credit', 'debit', 'none')", name="ck_settlement_direction"),
        sa.CheckConstraint("amount >= 0", name="ck_settlement_amount_positive"),
        sa.CheckConstraint("status IN ('pending', 'applied', 'failed', 'skipped')", name="ck_settlement_status"),
    )
    op.create_index("ix_settlements_status", "settlements", ["status"])

    # 9. SKU Weight Masters
    op.create_table(
        "sku_weight_masters",
        _pk("id"),
        sa.Column("company_id", UUID(as_uuid=True), sa.ForeignKey("companies.company_id"), nullable=False),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("product_name", sa.String(255)),
        sa.Column("sample_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("mean_kg", sa.Float, nullable=False, server_default="0"),
        sa.Column("m2", sa.Float, nullable=False, server_default="0"),
        sa.Column("stddev_kg", sa.Float, nullable=False, server_default="0"),
        sa.Column("min_kg", sa.Float),
        sa.Column("max_kg", sa.Float),
        sa.Column("standard_weight_kg", sa.Float),
        sa.Column("confidence", sa.Float, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="learning"),
        sa.Column("freeze_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("frozen_weight_kg", sa.Float),
        sa.Column("freeze_reason", sa.Text),
        sa.Column("frozen_by", sa.String(100)),
        sa.Column("frozen_at", sa.DateTime),
        sa.Column("freeze_expires_at", sa.DateTime),
        sa.Column("total_disputes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("disputes_seller_favor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("disputes_carrier_favor", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_dispute_at", sa.DateTime),
        sa.Column("first_sample_at", sa.DateTime),
        sa.Column("last_sample_at", sa.DateTime),
        *_timestamps(),
        sa.UniqueConstraint("company_id", "sku", name="uq_sku_master_per_company"),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 100", name="ck_sku_confidence_range"),
        sa.CheckConstraint("status IN ('learning', 'active')", name="ck_sku_status"),
    )

    # ─── Row Level Security ──────────────────────────────────────────────
    tables_with_rls = [
        "shipments",
        "weight_disputes",
        "settlements",
        "sku_weight_masters",
    ]
    for table in tables_with_rls:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (company_id::text = current_setting('app.current_company_id', true))"
        )


def downgrade() -> None:
    tables = [
        "sku_weight_masters",
        "settlements",
        "dispute_events",
        "dispute_evidence",
        "weight_disputes",
        "invoice_reconciliation_runs",
        "weight_observations",
        "shipments",
        "companies",
    ]
    for table in tables:
        op.drop_table(table)
