"""
Invoice Reconciler — monthly carrier invoice (MIS file) vs internal shipments.

Each row (AWB, charged weight, charged amount) is matched to a shipment by
tracking ID inside the billing window. Rows whose charged weight exceeds the
company threshold become ``invoice_discrepancy`` disputes, unless the
shipment already has any dispute, open or closed. That skip is what makes a
re-run over the same month idempotent.

Every run is a new immutable version for (carrier, month) with a CSV report
written next to it. Bad rows are logged and counted; they never abort the run.
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import pandas as pd
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifications import NotificationSender
from core.config import get_settings
from core.exceptions import DuplicateDispute, InvalidMeasurement, ScaleCheckError
from db.models import Company, InvoiceReconciliationRun, Shipment, WeightDispute
from disputes.lifecycle import DisputeLifecycleManager
from disputes.locks import locks, shipment_key
from pricing.quoter import PricingService, QuoteRequest
from weights import records
from weights.converter import to_kilograms
from weights.detector import company_threshold, compute_discrepancy

logger = structlog.get_logger()

BILLING_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

# ── Default field mappings for common carrier MIS formats ──────────────────

DEFAULT_INVOICE_MAPPING = {
    "AWB": "awb",
    "AWB_NO": "awb",
    "AWB_NUMBER": "awb",
    "WAYBILL": "awb",
    "TRACKING_ID": "awb",
    "CHARGED_WEIGHT": "charged_weight",
    "CHARGED_WEIGHT_KG": "charged_weight",
    "BILLED_WEIGHT": "charged_weight",
    "CHARGEABLE_WEIGHT": "charged_weight",
    "WEIGHT_UNIT": "weight_unit",
    "UNIT": "weight_unit",
    "CHARGED_AMOUNT": "charged_amount",
    "BILLED_AMOUNT": "charged_amount",
    "TOTAL_AMOUNT": "charged_amount",
    "AMOUNT": "charged_amount",
    "SHIPMENT_DATE": "shipment_date",
    "PICKUP_DATE": "shipment_date",
}


@dataclass(frozen=True)
class InvoiceRow:
    line_no: int
    awb: str
    charged_weight_kg: float
    charged_amount: float | None = None


@dataclass(frozen=True)
class RunRef:
    """Plain copy of run identity; survives per-row rollbacks."""

    run_id: object
    carrier: str
    billing_month: str
    version: int


def _normalize_header(name: str) -> str:
    return re.sub(r"[^A-Z0-9]+", "_", str(name).strip().upper()).strip("_")


def _line_numbers(content: str) -> tuple[list[int], list[int]]:
    """File line numbers of well-formed and overlong records, in order."""
    reader = csv.reader(io.StringIO(content))
    header = next(reader, [])
    good: list[int] = []
    overlong: list[int] = []
    for fields in reader:
        if not fields:
            continue
        (overlong if len(fields) > len(header) else good).append(reader.line_num)
    return good, overlong


def _cell(record: dict, key: str) -> str:
    value = record.get(key)
    if value is None or pd.isna(value):
        return ""
    return str(value).strip()


def parse_invoice(
    content: str | bytes,
    field_mapping: dict[str, str] | None = None,
) -> tuple[list[InvoiceRow], list[dict]]:
    """Parse a CSV invoice into rows plus per-line parse errors."""
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig")
    mapping = field_mapping or DEFAULT_INVOICE_MAPPING

    bad_lines: list[list[str]] = []
    frame = pd.read_csv(
        io.StringIO(content),
        dtype=str,
        keep_default_na=False,
        engine="python",
        on_bad_lines=bad_lines.append,
    )
    frame = frame.rename(columns=lambda c: mapping.get(_normalize_header(c), _normalize_header(c).lower()))
    if "awb" not in frame.columns or "charged_weight" not in frame.columns:
        raise InvalidMeasurement("Invoice must have AWB and charged weight columns")

    good_lines, overlong_lines = _line_numbers(content)
    awb_index = list(frame.columns).index("awb")

    rows: list[InvoiceRow] = []
    errors: list[dict] = []
    for line_no, fields in zip(overlong_lines, bad_lines):
        awb = fields[awb_index].strip() if awb_index < len(fields) else ""
        errors.append(
            {
                "line_no": line_no,
                "awb": awb or None,
                "status": "failed",
                "error": f"expected {len(frame.columns)} fields, saw {len(fields)}",
            }
        )

    for line_no, record in zip(good_lines, frame.to_dict(orient="records")):
        awb = _cell(record, "awb")
        try:
            if not awb:
                raise InvalidMeasurement("missing AWB")
            weight = to_kilograms(_cell(record, "charged_weight") or None, _cell(record, "weight_unit") or "kg")
            amount_raw = _cell(record, "charged_amount").replace(",", "")
            amount = float(amount_raw) if amount_raw else None
        except (InvalidMeasurement, ValueError) as exc:
            errors.append({"line_no": line_no, "awb": awb or None, "status": "failed", "error": str(exc)})
            continue
        rows.append(InvoiceRow(line_no=line_no, awb=awb, charged_weight_kg=weight, charged_amount=amount))
    errors.sort(key=lambda error: error["line_no"])
    return rows, errors


def billing_window(billing_month: str, grace_days: int) -> tuple[datetime, datetime]:
    year, month = (int(part) for part in billing_month.split("-"))
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start - timedelta(days=grace_days), end


class InvoiceReconciler:
    def __init__(
        self,
        db: AsyncSession,
        *,
        pricing: PricingService,
        lifecycle: DisputeLifecycleManager,
        notifier: NotificationSender,
        report_dir: str | None = None,
    ):
        self.db = db
        self.pricing = pricing
        self.lifecycle = lifecycle
        self.notifier = notifier
        settings = get_settings()
        self.report_dir = Path(report_dir or settings.reconciliation_report_dir)
        self.grace_days = settings.reconciliation_window_grace_days

    async def _next_version(self, carrier: str, billing_month: str) -> int:
        result = await self.db.execute(
            select(func.max(InvoiceReconciliationRun.version)).where(
                InvoiceReconciliationRun.carrier == carrier,
                InvoiceReconciliationRun.billing_month == billing_month,
            )
        )
        return (result.scalar() or 0) + 1

    async def run(
        self,
        carrier: str,
        billing_month: str,
        content: str | bytes,
        source_filename: str | None = None,
    ) -> InvoiceReconciliationRun:
        if not BILLING_MONTH_RE.match(billing_month or ""):
            raise InvalidMeasurement(f"Billing month must be YYYY-MM, got '{billing_month}'")
        carrier = carrier.lower()

        run = InvoiceReconciliationRun(
            carrier=carrier,
            billing_month=billing_month,
            version=await self._next_version(carrier, billing_month),
            source_filename=source_filename,
            status="running",
        )
        self.db.add(run)
        await self.db.commit()
        run_ref = RunRef(run_id=run.run_id, carrier=carrier, billing_month=billing_month, version=run.version)
        log = logger.bind(run_id=str(run_ref.run_id), carrier=carrier, billing_month=billing_month, version=run_ref.version)
        log.info("reconciler.run_started")

        try:
            rows, results = parse_invoice(content)
            for error in results:
                log.warning("reconciler.row_failed", line_no=error["line_no"], awb=error["awb"], error=error["error"])
            window = billing_window(billing_month, self.grace_days)
            for row in rows:
                try:
                    results.append(await self._reconcile_row(run_ref, row, window))
                except ScaleCheckError as exc:
                    await self.db.rollback()
                    log.warning("reconciler.row_failed", line_no=row.line_no, awb=row.awb, error=str(exc))
                    results.append({"line_no": row.line_no, "awb": row.awb, "status": "failed", "error": str(exc)})
        except Exception as exc:
            await self.db.rollback()
            await self.db.refresh(run)
            run.status = "failed"
            run.summary = {"error": str(exc)}
            run.completed_at = datetime.utcnow()
            self.db.add(run)
            await self.db.commit()
            log.error("reconciler.run_failed", error=str(exc), exc_info=True)
            raise

        await self.db.refresh(run)
        report = pd.DataFrame(
            results,
            columns=[
                "line_no",
                "awb",
                "status",
                "charged_weight_kg",
                "declared_chargeable_kg",
                "percentage",
                "charged_amount",
                "dispute_code",
                "error",
            ],
        ).sort_values("line_no")
        counts = report["status"].value_counts().to_dict()

        run.total_rows = len(report)
        run.unmatched = int(counts.get("unmatched", 0))
        run.discrepant = int(counts.get("discrepant", 0))
        run.skipped_existing = int(counts.get("already_disputed", 0))
        run.matched = int(counts.get("matched", 0)) + run.discrepant + run.skipped_existing
        run.disputes_created = run.discrepant
        run.failed_rows = int(counts.get("failed", 0))
        run.report_ref = self._write_report(run_ref, report)
        run.summary = {
            "total_rows": run.total_rows,
            "matched": run.matched,
            "unmatched": run.unmatched,
            "discrepant": run.discrepant,
            "disputes_created": run.disputes_created,
            "skipped_existing": run.skipped_existing,
            "failed_rows": run.failed_rows,
            "overbilled_amount": round(
                float(pd.to_numeric(report.loc[report["status"] == "discrepant", "charged_amount"]).fillna(0).sum()),
                2,
            ),
        }
        run.status = "completed"
        run.completed_at = datetime.utcnow()
        self.db.add(run)
        await self.db.commit()
        log.info("reconciler.run_completed", **run.summary)
        return run

    async def _reconcile_row(self, run: RunRef, row: InvoiceRow, window) -> dict:
        base = {
            "line_no": row.line_no,
            "awb": row.awb,
            "charged_weight_kg": row.charged_weight_kg,
            "charged_amount": row.charged_amount,
        }
        result = await self.db.execute(
            select(Shipment).where(
                Shipment.tracking_id == row.awb,
                Shipment.carrier == run.carrier,
                Shipment.created_at >= window[0],
                Shipment.created_at < window[1],
            )
        )
        shipment = result.scalar_one_or_none()
        if shipment is None:
            return {**base, "status": "unmatched"}

        async with locks.hold(shipment_key(shipment.shipment_id)):
            shipment = await records.get_shipment_by_tracking(self.db, row.awb)
            existing = await self.db.execute(
                select(WeightDispute.dispute_code).where(WeightDispute.shipment_id == shipment.shipment_id).limit(1)
            )
            existing_code = existing.scalar_one_or_none()
            if existing_code is not None:
                return {**base, "status": "already_disputed", "dispute_code": existing_code}

            company = await self.db.get(Company, shipment.company_id)
            threshold = company_threshold(company)
            discrepancy = compute_discrepancy(
                shipment.declared_weight_kg,
                records.declared_dimensions(shipment),
                row.charged_weight_kg,
                None,
                shipment.dim_divisor or get_settings().default_dim_divisor,
            )
            base.update(
                declared_chargeable_kg=discrepancy.declared_chargeable_kg,
                percentage=discrepancy.percentage,
            )
            if discrepancy.percentage <= threshold:
                return {**base, "status": "matched"}

            observed_at = datetime.utcnow()
            records.add_observation(
                self.db,
                shipment,
                stage="applied",
                value_kg=row.charged_weight_kg,
                source="invoice",
                observed_at=observed_at,
                external_ref=f"{run.carrier}:{run.billing_month}:v{run.version}",
            )
            impact = await self.pricing.financial_impact(
                QuoteRequest.for_shipment(shipment),
                discrepancy.declared_chargeable_kg,
                discrepancy.declared_dims,
                discrepancy.reported_chargeable_kg,
                discrepancy.reported_dims,
            )
            try:
                dispute = await self.lifecycle.open_dispute(
                    shipment,
                    declared_kg=discrepancy.declared_chargeable_kg,
                    actual_kg=discrepancy.reported_chargeable_kg,
                    percentage=discrepancy.percentage,
                    threshold_pct=threshold,
                    impact=impact,
                    category="invoice_discrepancy",
                    source="courier_invoice",
                    reported_dead_kg=row.charged_weight_kg,
                    reconciliation_run_id=run.run_id,
                )
            except DuplicateDispute as dup:
                # Drop the applied observation staged for this row
                await self.db.rollback()
                return {**base, "status": "already_disputed", "dispute_code": dup.existing.dispute_code}
            await self.db.commit()

        await self.notifier.send(
            str(shipment.company_id),
            "weight_dispute_created",
            {
                "dispute_code": dispute.dispute_code,
                "tracking_id": shipment.tracking_id,
                "source": "courier_invoice",
                "percentage": dispute.percentage,
                "cost_difference": dispute.cost_difference,
            },
        )
        if dispute.priority == "urgent":
            await self.lifecycle.escalate(
                dispute.dispute_id, "system", "Company flagged for suspicious weight patterns"
            )
        return {**base, "status": "discrepant", "dispute_code": dispute.dispute_code}

    def _write_report(self, run: RunRef, report: pd.DataFrame) -> str:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_dir / f"{run.carrier}_{run.billing_month}_v{run.version}.csv"
        report.to_csv(path, index=False)
        return str(path)
