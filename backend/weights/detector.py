"""
Discrepancy Detector — decides whether a carrier weight warrants a dispute.

Per carrier reading:
  1. normalize to kg / cm (carrier adapters already did units; we re-check)
  2. chargeable weight for declared and reported packages, reusing declared
     dimensions when the carrier sent none
  3. percentage = |reported − declared| / declared × 100
  4. percentage ≤ company threshold → shipment verified, stop
  5. price both weights (quoter, or flagged zone-table fallback)
  6. open a pending dispute with a heuristic category, notify the seller

Duplicate deliveries are dropped; a reading for a shipment that already has
an open dispute is appended to its history and timeline instead of opening
a second one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifications import NotificationSender
from core.config import get_settings
from core.exceptions import DuplicateDispute, InvalidMeasurement
from db.models import Company, DisputeEvent, Shipment, WeightDispute
from disputes.lifecycle import DisputeLifecycleManager
from disputes.locks import locks, shipment_key
from pricing.quoter import PricingService, QuoteRequest
from weights import records, sku_learner
from weights.converter import Dimensions, chargeable_weight, to_kilograms, volumetric_weight
from weights.readings import ReportedWeight

logger = structlog.get_logger()

SCANNER_ERROR_RATIO = 10.0
PACKING_MATERIAL_MAX_PCT = 20.0
SHAPE_VOLUME_TOLERANCE = 0.20


@dataclass(frozen=True)
class Discrepancy:
    declared_dead_kg: float
    declared_volumetric_kg: float | None
    declared_chargeable_kg: float
    reported_dead_kg: float
    reported_volumetric_kg: float | None
    reported_chargeable_kg: float
    declared_dims: Dimensions | None
    reported_dims: Dimensions | None
    percentage: float

    @property
    def difference_kg(self) -> float:
        return round(self.reported_chargeable_kg - self.declared_chargeable_kg, 4)

    @property
    def volumetric_driven(self) -> bool:
        return self.reported_volumetric_kg is not None and self.reported_volumetric_kg > self.reported_dead_kg


@dataclass
class DetectionResult:
    outcome: str  # verified | dispute_created | merged | already_billed | duplicate
    shipment_id: str
    tracking_id: str
    percentage: float | None = None
    threshold_pct: float | None = None
    dispute: WeightDispute | None = None


def compute_discrepancy(
    declared_kg: float,
    declared_dims: Dimensions | None,
    reported_kg: float,
    reported_dims: Dimensions | None,
    divisor: int | float,
) -> Discrepancy:
    if declared_kg <= 0 or reported_kg <= 0:
        raise InvalidMeasurement("Declared and reported weights must be positive")

    declared_vol = volumetric_weight(declared_dims, divisor) if declared_dims else None
    effective_dims = reported_dims or declared_dims
    reported_vol = volumetric_weight(effective_dims, divisor) if effective_dims else None

    declared_chargeable = chargeable_weight(declared_kg, declared_vol)
    reported_chargeable = chargeable_weight(reported_kg, reported_vol)
    percentage = abs(reported_chargeable - declared_chargeable) / declared_chargeable * 100

    return Discrepancy(
        declared_dead_kg=declared_kg,
        declared_volumetric_kg=declared_vol,
        declared_chargeable_kg=declared_chargeable,
        reported_dead_kg=reported_kg,
        reported_volumetric_kg=reported_vol,
        reported_chargeable_kg=reported_chargeable,
        declared_dims=declared_dims,
        reported_dims=effective_dims,
        percentage=round(percentage, 2),
    )


def classify_category(d: Discrepancy) -> str:
    if d.reported_chargeable_kg < d.declared_chargeable_kg:
        return "legitimate_difference"
    if d.volumetric_driven:
        return "volumetric"
    if d.reported_chargeable_kg >= d.declared_chargeable_kg * SCANNER_ERROR_RATIO:
        return "scanner_error"
    if d.declared_dims and d.reported_dims:
        declared_volume = d.declared_dims.volume_cm3
        if abs(d.reported_dims.volume_cm3 - declared_volume) / declared_volume > SHAPE_VOLUME_TOLERANCE:
            return "shape_distortion"
    if d.percentage <= PACKING_MATERIAL_MAX_PCT:
        return "packing_material"
    return "manual_error"


def company_threshold(company: Company | None) -> float:
    if company is not None and company.weight_threshold_pct is not None:
        return company.weight_threshold_pct
    return get_settings().default_threshold_pct


class WeightDiscrepancyDetector:
    def __init__(
        self,
        db: AsyncSession,
        *,
        pricing: PricingService,
        lifecycle: DisputeLifecycleManager,
        notifier: NotificationSender,
    ):
        self.db = db
        self.pricing = pricing
        self.lifecycle = lifecycle
        self.notifier = notifier

    async def process(self, reading: ReportedWeight) -> DetectionResult:
        weight_kg = to_kilograms(reading.weight_kg, "kg")
        scanned_at = reading.scanned_at or datetime.utcnow()
        if scanned_at.tzinfo is not None:
            scanned_at = scanned_at.replace(tzinfo=None)

        shipment = await records.get_shipment_by_tracking(self.db, reading.tracking_id)
        log = logger.bind(tracking_id=reading.tracking_id, shipment_id=str(shipment.shipment_id))

        async with locks.hold(shipment_key(shipment.shipment_id)):
            shipment = await records.get_shipment_by_tracking(self.db, reading.tracking_id)
            result = DetectionResult(
                outcome="duplicate",
                shipment_id=str(shipment.shipment_id),
                tracking_id=shipment.tracking_id,
            )

            if await records.is_duplicate_observation(
                self.db, shipment.shipment_id, reading.stage, weight_kg, scanned_at
            ):
                log.info("detector.duplicate_observation", stage=reading.stage)
                return result

            def record():
                records.add_observation(
                    self.db,
                    shipment,
                    stage=reading.stage,
                    value_kg=weight_kg,
                    source=reading.source,
                    observed_at=scanned_at,
                    dims=reading.dimensions,
                    location=reading.location,
                    external_ref=reading.external_ref,
                )

            record()
            company = await self.db.get(Company, shipment.company_id)
            threshold = company_threshold(company)
            divisor = shipment.dim_divisor or get_settings().default_dim_divisor
            discrepancy = compute_discrepancy(
                shipment.declared_weight_kg,
                records.declared_dimensions(shipment),
                weight_kg,
                reading.dimensions,
                divisor,
            )
            result.percentage = discrepancy.percentage
            result.threshold_pct = threshold

            existing = await self.lifecycle.find_open(shipment.shipment_id)
            if existing is not None:
                await self._merge(existing, discrepancy, reading)
                result.outcome, result.dispute = "merged", existing
                log.info("detector.merged_into_open", dispute_code=existing.dispute_code)
                return result

            if shipment.billing_weight_kg is not None:
                await self.db.commit()
                result.outcome = "already_billed"
                log.info("detector.already_billed", billing_weight_kg=shipment.billing_weight_kg)
                return result

            if discrepancy.percentage <= threshold:
                # Later stages of a verified shipment are recorded but not learned twice
                newly_verified = shipment.weight_status != "verified"
                if newly_verified:
                    shipment.weight_status = "verified"
                    shipment.verified_at = datetime.utcnow()
                await self.db.commit()
                log.info("detector.verified", percentage=discrepancy.percentage, threshold_pct=threshold)
                if newly_verified:
                    await sku_learner.learn_from_shipment(self.db, shipment, weight_kg)
                result.outcome = "verified"
                return result

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
                    category=classify_category(discrepancy),
                    reported_dead_kg=discrepancy.reported_dead_kg,
                    reported_volumetric_kg=discrepancy.reported_volumetric_kg,
                )
            except DuplicateDispute as dup:
                # Lost to a concurrent writer at the unique constraint; the
                # rollback dropped our observation, so write it again
                shipment = await records.get_shipment_by_tracking(self.db, reading.tracking_id)
                record()
                await self._merge(dup.existing, discrepancy, reading)
                result.outcome, result.dispute = "merged", dup.existing
                return result

            await self.db.commit()
            result.outcome, result.dispute = "dispute_created", dispute

        await self.notifier.send(
            str(shipment.company_id),
            "weight_dispute_created",
            {
                "dispute_code": dispute.dispute_code,
                "tracking_id": shipment.tracking_id,
                "declared_weight_kg": dispute.declared_weight_kg,
                "actual_weight_kg": dispute.actual_weight_kg,
                "percentage": dispute.percentage,
                "cost_difference": dispute.cost_difference,
                "charge_direction": dispute.charge_direction,
                "auto_resolve_at": dispute.auto_resolve_at.isoformat(),
            },
        )
        if dispute.priority == "urgent":
            await self.lifecycle.escalate(
                dispute.dispute_id, "system", "Company flagged for suspicious weight patterns"
            )
        return result

    async def _merge(self, dispute: WeightDispute, discrepancy: Discrepancy, reading: ReportedWeight) -> None:
        self.db.add(
            DisputeEvent(
                dispute_id=dispute.dispute_id,
                from_status=dispute.status,
                to_status=dispute.status,
                actor="system",
                action=f"Additional carrier weight received ({reading.stage})",
                notes=(
                    f"{discrepancy.reported_chargeable_kg:.3f} kg chargeable "
                    f"({discrepancy.percentage:.1f}% vs declared)"
                ),
            )
        )
        await self.db.commit()
