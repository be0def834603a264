"""
Dispute Lifecycle Manager — the weight dispute state machine.

States:
  pending ─┬─> accepted                       (seller accepts carrier weight)
           ├─> auto_accepted                  (grace period elapsed, sweep)
           ├─> evidence_submitted ─> under_review ─> resolved_in_favor
           │                                       ├─> resolved_against
           │                                       └─> partial_resolution
           ├─> escalated ─> resolved_* | partial_resolution
           └─> withdrawn                      (from any open state)

Every move is a compare-and-set UPDATE on the current status, so a seller
action racing the auto-resolution sweep can only win once. Writers hold the
per-shipment lock. Terminal moves write the Settlement row in the same
transaction and clear ``open_shipment_id``, which frees the shipment's
one-open-dispute slot.
"""

from __future__ import annotations

import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifications import NotificationSender
from core.config import get_settings
from core.exceptions import (
    DisputeNotFound,
    DuplicateDispute,
    InvalidMeasurement,
    InvalidTransition,
    ShipmentBusy,
)
from db.models import (
    Company,
    DisputeEvent,
    DisputeEvidence,
    Settlement,
    Shipment,
    WeightDispute,
    WeightObservation,
)
from disputes.evidence import EvidenceArtifact, EvidenceValidation, is_weak, validate_evidence
from disputes.locks import locks, shipment_key
from disputes.settlement import (
    BillingBasis,
    Resolution,
    ResolutionType,
    SettlementExecutor,
    build_settlement_row,
    compute_settlement,
    execute_settlement,
)
from integrations.carrier_disputes import CarrierDisputeSubmitter
from pricing.quoter import FinancialImpact, PricingService, QuoteRequest
from weights import sku_learner
from weights.converter import dimensions_or_none

logger = structlog.get_logger()

OPEN_STATUSES = frozenset({"pending", "evidence_submitted", "under_review", "escalated"})
TERMINAL_STATUSES = frozenset(
    {
        "accepted",
        "resolved_in_favor",
        "resolved_against",
        "partial_resolution",
        "auto_accepted",
        "withdrawn",
    }
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"accepted", "evidence_submitted", "auto_accepted", "escalated", "withdrawn"}),
    "evidence_submitted": frozenset({"under_review", "escalated", "withdrawn"}),
    "under_review": frozenset(
        {"resolved_in_favor", "resolved_against", "partial_resolution", "escalated", "withdrawn"}
    ),
    "escalated": frozenset({"resolved_in_favor", "resolved_against", "partial_resolution", "withdrawn"}),
}

CARRIER_OUTCOMES = {
    "accepted": ResolutionType.SELLER_FAVOR,
    "rejected": ResolutionType.CARRIER_FAVOR,
    "partial": ResolutionType.PARTIAL_ADJUSTMENT,
}

REVIEW_DECISIONS = {
    "approve": ResolutionType.SELLER_FAVOR,
    "reject": ResolutionType.CARRIER_FAVOR,
    "partial": ResolutionType.PARTIAL_ADJUSTMENT,
}

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_dispute_code(now: datetime | None = None) -> str:
    """WD-YYYYMMDD-XXXXX"""
    now = now or datetime.utcnow()
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(5))
    return f"WD-{now:%Y%m%d}-{suffix}"


def classify_priority(cost_difference: float, high_value_threshold: float, fraud_flagged: bool = False) -> str:
    if fraud_flagged:
        return "urgent"
    settings = get_settings()
    magnitude = abs(cost_difference)
    if magnitude >= high_value_threshold:
        return "high"
    if magnitude >= settings.medium_value_threshold:
        return "medium"
    return "low"


def company_high_value_threshold(company: Company | None) -> float:
    if company is not None and company.high_value_threshold is not None:
        return company.high_value_threshold
    return get_settings().high_value_threshold


def resolved_dead_weight(dispute: WeightDispute, shipment: Shipment, basis: BillingBasis) -> float | None:
    """
    Physical weight the resolution confirms, for the SKU baseline.

    The billed weight can be volumetric, so it is never learned directly.
    An adjusted weight is a negotiated chargeable figure and teaches nothing.
    """
    if basis is BillingBasis.REPORTED:
        return dispute.reported_dead_weight_kg or dispute.actual_weight_kg
    if basis is BillingBasis.DECLARED:
        return shipment.declared_weight_kg
    return None


def _enqueue_carrier_submission(dispute_id: str) -> None:
    from workers.celery_app import celery_app

    celery_app.send_task("workers.disputes.submit_to_carrier", kwargs={"dispute_id": dispute_id})


@dataclass
class EvidenceOutcome:
    dispute: WeightDispute
    validations: list[EvidenceValidation] = field(default_factory=list)
    routed_to: str | None = None  # carrier_submission | escalated | None


class DisputeLifecycleManager:
    def __init__(
        self,
        db: AsyncSession,
        *,
        notifier: NotificationSender,
        settlement_executor: SettlementExecutor,
        pricing: PricingService | None = None,
        enqueue_submission: Callable[[str], None] | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settlement_executor = settlement_executor
        self.pricing = pricing
        self.enqueue_submission = enqueue_submission or _enqueue_carrier_submission
        self.settings = get_settings()

    # ── Lookups ────────────────────────────────────────────────────────

    async def load(self, ref) -> WeightDispute:
        """Fetch by UUID or by WD- code, bypassing the identity map."""
        stmt = select(WeightDispute).execution_options(populate_existing=True)
        if isinstance(ref, str) and ref.upper().startswith("WD-"):
            stmt = stmt.where(WeightDispute.dispute_code == ref.upper())
        else:
            try:
                dispute_id = ref if isinstance(ref, uuid.UUID) else uuid.UUID(str(ref))
            except ValueError as exc:
                raise DisputeNotFound(f"Dispute '{ref}' not found") from exc
            stmt = stmt.where(WeightDispute.dispute_id == dispute_id)

        dispute = (await self.db.execute(stmt)).scalar_one_or_none()
        if dispute is None:
            raise DisputeNotFound(f"Dispute '{ref}' not found")
        return dispute

    async def find_open(self, shipment_id) -> WeightDispute | None:
        result = await self.db.execute(
            select(WeightDispute)
            .where(
                WeightDispute.shipment_id == shipment_id,
                WeightDispute.status.in_(OPEN_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    # ── Creation ───────────────────────────────────────────────────────

    async def open_dispute(
        self,
        shipment: Shipment,
        *,
        declared_kg: float,
        actual_kg: float,
        percentage: float,
        threshold_pct: float,
        impact: FinancialImpact,
        category: str,
        source: str = "carrier_webhook",
        reported_dead_kg: float | None = None,
        reported_volumetric_kg: float | None = None,
        reconciliation_run_id=None,
        actor: str = "system",
    ) -> WeightDispute:
        """
        Insert a pending dispute. Caller holds the shipment lock and commits.

        Raises DuplicateDispute if the shipment already has an open one,
        whether found up front or via the open_shipment_id unique constraint.
        """
        existing = await self.find_open(shipment.shipment_id)
        if existing is not None:
            raise DuplicateDispute(existing)

        company = await self.db.get(Company, shipment.company_id)
        fraud_flagged = bool(company and company.suspicious_fraud)
        now = datetime.utcnow()

        dispute = WeightDispute(
            dispute_id=uuid.uuid4(),
            dispute_code=generate_dispute_code(now),
            company_id=shipment.company_id,
            shipment_id=shipment.shipment_id,
            open_shipment_id=shipment.shipment_id,
            source=source,
            reconciliation_run_id=reconciliation_run_id,
            declared_weight_kg=round(declared_kg, 4),
            actual_weight_kg=round(actual_kg, 4),
            difference_kg=round(actual_kg - declared_kg, 4),
            percentage=round(percentage, 2),
            threshold_pct=threshold_pct,
            reported_dead_weight_kg=reported_dead_kg,
            reported_volumetric_kg=reported_volumetric_kg,
            declared_cost=impact.declared_cost,
            actual_cost=impact.actual_cost,
            cost_difference=impact.difference,
            charge_direction=impact.charge_direction,
            ratecard_version=impact.ratecard_version,
            calculation_method=impact.calculation_method,
            zone=impact.zone,
            status="pending",
            category="fraud_suspected" if fraud_flagged else category,
            priority=classify_priority(impact.difference, company_high_value_threshold(company), fraud_flagged),
            created_at=now,
            updated_at=now,
            auto_resolve_at=now + timedelta(days=self.settings.auto_resolve_days),
            submission_attempts=0,
        )
        self.db.add(dispute)
        self.db.add(
            DisputeEvent(
                dispute_id=dispute.dispute_id,
                from_status=None,
                to_status="pending",
                actor=actor,
                action="Dispute created",
                notes=(
                    f"Declared {declared_kg:.3f} kg vs reported {actual_kg:.3f} kg "
                    f"({percentage:.1f}%, {impact.calculation_method})"
                ),
                created_at=now,
            )
        )
        shipment.weight_status = "disputed"

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.find_open(shipment.shipment_id)
            if existing is None:
                raise
            raise DuplicateDispute(existing)

        logger.info(
            "lifecycle.dispute_opened",
            dispute_code=dispute.dispute_code,
            shipment_id=str(shipment.shipment_id),
            category=dispute.category,
            priority=dispute.priority,
            percentage=dispute.percentage,
            cost_difference=dispute.cost_difference,
            calculation_method=dispute.calculation_method,
            source=source,
        )
        return dispute

    # ── Transition core ────────────────────────────────────────────────

    async def _transition(
        self,
        dispute: WeightDispute,
        target: str,
        actor: str,
        action: str,
        notes: str | None = None,
        values: dict | None = None,
    ) -> None:
        """Compare-and-set the status and append a timeline event. Does not commit."""
        current = dispute.status
        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransition(dispute.dispute_code, current, target)

        now = datetime.utcnow()
        changes = dict(values or {})
        changes["status"] = target
        changes["updated_at"] = now
        if target in TERMINAL_STATUSES:
            changes["open_shipment_id"] = None

        result = await self.db.execute(
            update(WeightDispute)
            .where(WeightDispute.dispute_id == dispute.dispute_id, WeightDispute.status == current)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            latest = await self.load(dispute.dispute_id)
            logger.warning(
                "lifecycle.transition_lost_race",
                dispute_code=dispute.dispute_code,
                expected=current,
                actual=latest.status,
                target=target,
            )
            raise InvalidTransition(dispute.dispute_code, latest.status, target)

        for key, value in changes.items():
            setattr(dispute, key, value)
        self.db.add(
            DisputeEvent(
                dispute_id=dispute.dispute_id,
                from_status=current,
                to_status=target,
                actor=actor,
                action=action,
                notes=notes,
                created_at=now,
            )
        )
        logger.info(
            "lifecycle.transition",
            dispute_code=dispute.dispute_code,
            from_status=current,
            to_status=target,
            actor=actor,
        )

    async def _set_billing_weight(self, dispute: WeightDispute, weight_kg: float, basis: BillingBasis) -> Shipment:
        shipment = await self.db.get(Shipment, dispute.shipment_id)
        shipment.billing_weight_kg = weight_kg
        shipment.weight_status = "resolved"

        if basis is BillingBasis.REPORTED:
            source = "invoice" if dispute.source == "courier_invoice" else "webhook"
        else:
            source = "manual"

        result = await self.db.execute(
            select(WeightObservation).where(
                WeightObservation.shipment_id == shipment.shipment_id,
                WeightObservation.stage == "billing",
            )
        )
        billing = result.scalars().first()
        if billing is None:
            self.db.add(
                WeightObservation(
                    shipment_id=shipment.shipment_id,
                    stage="billing",
                    value_kg=weight_kg,
                    source=source,
                    external_ref=dispute.dispute_code,
                    observed_at=datetime.utcnow(),
                )
            )
        else:
            # Billing weight only ever changes through a dispute resolution
            billing.value_kg = weight_kg
            billing.source = source
            billing.external_ref = dispute.dispute_code
        return shipment

    async def _resolve(self, dispute: WeightDispute, resolution: Resolution) -> WeightDispute:
        """Terminal move + settlement row in one transaction, then side effects."""
        plan = compute_settlement(dispute, resolution)
        now = datetime.utcnow()
        await self._transition(
            dispute,
            resolution.target_status,
            resolution.actor,
            action=f"Dispute resolved ({resolution.type.value})",
            notes=resolution.notes,
            values={
                "resolution_type": resolution.type.value,
                "final_weight_kg": plan.final_weight_kg,
                "final_cost": plan.final_cost,
                "refund_amount": plan.refund_amount,
                "debit_amount": plan.debit_amount,
                "resolved_by": resolution.actor,
                "resolved_at": now,
                "resolution_notes": resolution.notes,
            },
        )
        settlement = build_settlement_row(dispute, plan)
        self.db.add(settlement)
        shipment = await self._set_billing_weight(dispute, plan.final_weight_kg, resolution.basis)
        await self.db.commit()

        logger.info(
            "lifecycle.resolved",
            dispute_code=dispute.dispute_code,
            status=dispute.status,
            final_weight_kg=plan.final_weight_kg,
            amount=plan.amount,
            direction=plan.direction,
        )

        if settlement.status == "pending":
            await execute_settlement(self.db, settlement, self.settlement_executor)

        await self.notifier.send(
            str(dispute.company_id),
            "weight_dispute_resolved",
            {
                "dispute_code": dispute.dispute_code,
                "tracking_id": shipment.tracking_id,
                "status": dispute.status,
                "final_weight_kg": plan.final_weight_kg,
                "refund_amount": plan.refund_amount,
                "debit_amount": plan.debit_amount,
            },
        )

        dead_weight_kg = resolved_dead_weight(dispute, shipment, resolution.basis)
        if dead_weight_kg is not None:
            await sku_learner.learn_from_shipment(self.db, shipment, dead_weight_kg)
        if shipment.sku and resolution.type is not ResolutionType.WITHDRAWN:
            seller_favor = resolution.basis is not BillingBasis.REPORTED
            await sku_learner.record_dispute_outcome(self.db, shipment.company_id, shipment.sku, seller_favor)
        return dispute

    async def _escalate(self, dispute: WeightDispute, actor: str, reason: str) -> WeightDispute:
        await self._transition(dispute, "escalated", actor, action="Escalated to manual review", notes=reason)
        await self.db.commit()
        await self.notifier.send(
            str(dispute.company_id),
            "weight_dispute_escalated",
            {"dispute_code": dispute.dispute_code, "reason": reason},
        )
        return dispute

    async def _adjusted_cost(self, dispute: WeightDispute, adjusted_weight_kg: float | None) -> float:
        if adjusted_weight_kg is None or adjusted_weight_kg <= 0:
            raise InvalidMeasurement("Partial resolution requires a positive adjusted weight")
        if self.pricing is None:
            raise RuntimeError("Partial resolution needs a pricing service")
        shipment = await self.db.get(Shipment, dispute.shipment_id)
        dims = dimensions_or_none(shipment.declared_length_cm, shipment.declared_width_cm, shipment.declared_height_cm)
        quote = await self.pricing.cost_at(QuoteRequest.for_shipment(shipment), adjusted_weight_kg, dims)
        return quote.total

    async def _build_resolution(
        self,
        dispute: WeightDispute,
        resolution_type: ResolutionType,
        actor: str,
        notes: str | None,
        adjusted_weight_kg: float | None,
    ) -> Resolution:
        if resolution_type is ResolutionType.PARTIAL_ADJUSTMENT:
            return Resolution(
                resolution_type,
                actor=actor,
                notes=notes,
                adjusted_weight_kg=adjusted_weight_kg,
                adjusted_cost=await self._adjusted_cost(dispute, adjusted_weight_kg),
            )
        return Resolution(resolution_type, actor=actor, notes=notes)

    # ── Seller actions ─────────────────────────────────────────────────

    async def accept(self, ref, actor: str) -> WeightDispute:
        """Seller accepts the carrier weight; settles at the reported weight."""
        dispute = await self.load(ref)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            return await self._resolve(
                dispute,
                Resolution(ResolutionType.SELLER_ACCEPTED, actor=actor, notes="Seller accepted carrier weight"),
            )

    async def withdraw(self, ref, actor: str, notes: str | None = None) -> WeightDispute:
        dispute = await self.load(ref)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            return await self._resolve(dispute, Resolution(ResolutionType.WITHDRAWN, actor=actor, notes=notes))

    async def submit_evidence(
        self,
        ref,
        artifacts: list[EvidenceArtifact],
        actor: str,
        notes: str | None = None,
        require_pending: bool = False,
    ) -> EvidenceOutcome:
        """
        Store and score evidence. From ``pending`` this is the seller's
        rejection of the carrier weight and moves the dispute on; on an
        already-contested dispute it only appends.
        """
        if not artifacts:
            raise ValueError("At least one evidence artifact is required")

        dispute = await self.load(ref)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            was_pending = dispute.status == "pending"
            if dispute.status in TERMINAL_STATUSES or (require_pending and not was_pending):
                raise InvalidTransition(dispute.dispute_code, dispute.status, "evidence_submitted")

            shipment = await self.db.get(Shipment, dispute.shipment_id)
            validations = [validate_evidence(artifact, shipment.created_at) for artifact in artifacts]
            for artifact, validation in zip(artifacts, validations):
                self.db.add(
                    DisputeEvidence(
                        dispute_id=dispute.dispute_id,
                        kind=artifact.kind,
                        url=artifact.url,
                        captured_at=artifact.captured_at,
                        notes=notes,
                        has_scale=validation.has_scale,
                        has_ruler=validation.has_ruler,
                        has_awb=validation.has_awb,
                        timestamp_fresh=validation.timestamp_fresh,
                        quality_score=validation.quality_score,
                        is_valid=validation.is_valid,
                        suggestions=validation.suggestions,
                        submitted_by=actor,
                    )
                )

            summary = f"{len(artifacts)} artifact(s), {sum(v.is_valid for v in validations)} valid"
            if was_pending:
                await self._transition(
                    dispute, "evidence_submitted", actor, action="Seller rejected carrier weight", notes=summary
                )
            else:
                self.db.add(
                    DisputeEvent(
                        dispute_id=dispute.dispute_id,
                        from_status=dispute.status,
                        to_status=dispute.status,
                        actor=actor,
                        action="Additional evidence submitted",
                        notes=summary,
                    )
                )
            await self.db.commit()
            logger.info(
                "lifecycle.evidence_received",
                dispute_code=dispute.dispute_code,
                artifacts=len(artifacts),
                valid=sum(v.is_valid for v in validations),
                status=dispute.status,
            )

            routed_to = None
            if was_pending:
                routed_to = await self._route_contested(dispute)

        await self.notifier.send(
            str(dispute.company_id),
            "weight_dispute_evidence_received",
            {"dispute_code": dispute.dispute_code, "artifacts": len(artifacts), "routed_to": routed_to},
        )
        return EvidenceOutcome(dispute=dispute, validations=validations, routed_to=routed_to)

    async def reject(self, ref, artifacts: list[EvidenceArtifact], actor: str, notes: str | None = None) -> EvidenceOutcome:
        return await self.submit_evidence(ref, artifacts, actor, notes, require_pending=True)

    async def _route_contested(self, dispute: WeightDispute) -> str:
        """Weak evidence on a high-value claim, or a flagged company, goes to a human."""
        company = await self.db.get(Company, dispute.company_id)
        result = await self.db.execute(select(DisputeEvidence).where(DisputeEvidence.dispute_id == dispute.dispute_id))
        weak = is_weak(result.scalars().all())
        high_value = abs(dispute.cost_difference) >= company_high_value_threshold(company)

        if company is not None and company.suspicious_fraud:
            await self._escalate(dispute, "system", "Company flagged for suspicious weight patterns")
            return "escalated"
        if high_value and weak:
            await self._escalate(dispute, "system", "High-value dispute with weak evidence")
            return "escalated"

        self.enqueue_submission(str(dispute.dispute_id))
        return "carrier_submission"

    # ── Carrier side ───────────────────────────────────────────────────

    async def submit_to_carrier(self, ref, submitter: CarrierDisputeSubmitter) -> WeightDispute:
        """
        Send the claim to the carrier and move to ``under_review``.

        The carrier call runs outside the shipment lock. Raises
        CarrierSubmissionFailed for the caller's retry policy.
        """
        dispute = await self.load(ref)
        if dispute.status != "evidence_submitted":
            logger.info("lifecycle.submission_skipped", dispute_code=dispute.dispute_code, status=dispute.status)
            return dispute

        shipment = await self.db.get(Shipment, dispute.shipment_id)
        result = await self.db.execute(
            select(DisputeEvidence.url)
            .where(DisputeEvidence.dispute_id == dispute.dispute_id)
            .order_by(DisputeEvidence.submitted_at)
        )
        evidence_urls = [row[0] for row in result.all()]

        receipt = await submitter.submit(
            shipment.carrier,
            shipment.tracking_id,
            dispute.declared_weight_kg,
            evidence_urls,
            notes=f"Dispute {dispute.dispute_code}",
        )

        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            await self._transition(
                dispute,
                "under_review",
                "system",
                action=f"Submitted to {shipment.carrier} via {receipt.method}",
                notes=f"Reference {receipt.reference_number}",
                values={
                    "submitted_to_courier_at": datetime.utcnow(),
                    "submission_method": receipt.method,
                    "courier_reference": receipt.reference_number,
                    "submission_attempts": (dispute.submission_attempts or 0) + 1,
                },
            )
            await self.db.commit()
        return dispute

    async def record_submission_failure(self, ref, error: str, exhausted: bool) -> WeightDispute:
        dispute = await self.load(ref)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            dispute.submission_attempts = (dispute.submission_attempts or 0) + 1
            self.db.add(
                DisputeEvent(
                    dispute_id=dispute.dispute_id,
                    from_status=dispute.status,
                    to_status=dispute.status,
                    actor="system",
                    action="Carrier submission failed",
                    notes=error[:500],
                )
            )
            await self.db.commit()
            if exhausted and dispute.status == "evidence_submitted":
                await self._escalate(
                    dispute,
                    "system",
                    f"Carrier submission failed after {dispute.submission_attempts} attempts",
                )
        return dispute

    async def find_by_reference(self, reference: str) -> WeightDispute:
        result = await self.db.execute(
            select(WeightDispute.dispute_id).where(WeightDispute.courier_reference == reference)
        )
        dispute_id = result.scalar_one_or_none()
        if dispute_id is None:
            raise DisputeNotFound(f"No dispute for carrier reference '{reference}'")
        return await self.load(dispute_id)

    async def record_carrier_response(
        self,
        reference: str,
        outcome: str,
        adjusted_weight_kg: float | None = None,
        notes: str | None = None,
        actor: str = "carrier",
    ) -> WeightDispute:
        if outcome not in CARRIER_OUTCOMES:
            raise ValueError(f"Unknown carrier outcome '{outcome}'")
        dispute = await self.find_by_reference(reference)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            resolution = await self._build_resolution(
                dispute, CARRIER_OUTCOMES[outcome], actor, notes, adjusted_weight_kg
            )
            return await self._resolve(dispute, resolution)

    # ── Admin ──────────────────────────────────────────────────────────

    async def review(
        self,
        ref,
        decision: str,
        actor: str,
        adjusted_weight_kg: float | None = None,
        notes: str | None = None,
    ) -> WeightDispute:
        if decision == "escalate":
            return await self.escalate(ref, actor, notes or "Escalated by reviewer")
        if decision not in REVIEW_DECISIONS:
            raise ValueError(f"Unknown review decision '{decision}'")

        dispute = await self.load(ref)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            resolution = await self._build_resolution(
                dispute, REVIEW_DECISIONS[decision], actor, notes, adjusted_weight_kg
            )
            return await self._resolve(dispute, resolution)

    async def escalate(self, ref, actor: str, reason: str) -> WeightDispute:
        dispute = await self.load(ref)
        async with locks.hold(shipment_key(dispute.shipment_id)):
            dispute = await self.load(dispute.dispute_id)
            return await self._escalate(dispute, actor, reason)

    # ── Background ─────────────────────────────────────────────────────

    async def auto_resolve_due(self, now: datetime | None = None, limit: int = 500) -> dict:
        """Auto-accept every dispute still pending past its deadline."""
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(WeightDispute.dispute_id, WeightDispute.shipment_id)
            .where(WeightDispute.status == "pending", WeightDispute.auto_resolve_at <= now)
            .order_by(WeightDispute.auto_resolve_at)
            .limit(limit)
        )
        due = result.all()

        resolved, skipped = [], 0
        for dispute_id, shipment_id in due:
            try:
                async with locks.hold(shipment_key(shipment_id)):
                    dispute = await self.load(dispute_id)
                    # A seller action may have landed since the scan
                    if dispute.status != "pending" or dispute.auto_resolve_at > now:
                        skipped += 1
                        continue
                    await self._resolve(
                        dispute,
                        Resolution(
                            ResolutionType.AUTO_ACCEPTED,
                            actor="system",
                            notes=f"No seller response within {self.settings.auto_resolve_days} days",
                        ),
                    )
            except (InvalidTransition, ShipmentBusy) as exc:
                logger.info("lifecycle.sweep_skipped", dispute_id=str(dispute_id), reason=str(exc))
                skipped += 1
                continue
            resolved.append(dispute.dispute_code)

        summary = {"due": len(due), "auto_accepted": len(resolved), "skipped": skipped, "codes": resolved}
        logger.info("lifecycle.sweep_complete", **{k: v for k, v in summary.items() if k != "codes"})
        return summary

    async def retry_settlements(self, limit: int = 200) -> dict:
        result = await self.db.execute(
            select(Settlement)
            .where(Settlement.status.in_(("pending", "failed")))
            .order_by(Settlement.created_at)
            .limit(limit)
        )
        settlements = result.scalars().all()
        applied = 0
        for settlement in settlements:
            await execute_settlement(self.db, settlement, self.settlement_executor)
            if settlement.status == "applied":
                applied += 1
        summary = {"attempted": len(settlements), "applied": applied, "still_failing": len(settlements) - applied}
        logger.info("lifecycle.settlement_retry_complete", **summary)
        return summary


