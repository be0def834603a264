"""
Disputes Router — seller actions, admin review and dispute metrics.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_company_id, get_current_user, get_lifecycle, get_tenant_db, require_admin
from core.exceptions import DisputeNotFound, InvalidMeasurement, InvalidTransition, ShipmentBusy
from core.security import is_admin
from db.models import DisputeEvent, DisputeEvidence, Shipment, WeightDispute
from disputes.evidence import EvidenceArtifact
from disputes.lifecycle import OPEN_STATUSES, DisputeLifecycleManager

router = APIRouter(prefix="/api/v1/disputes", tags=["disputes"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ArtifactIn(BaseModel):
    url: str = Field(..., min_length=1)
    kind: str = Field("photo", pattern="^(photo|video|document)$")
    captured_at: datetime | None = None
    has_scale: bool = False
    has_ruler: bool = False
    has_awb: bool = False
    width_px: int | None = Field(None, gt=0)
    height_px: int | None = Field(None, gt=0)
    size_bytes: int | None = Field(None, ge=0)


class EvidenceSubmission(BaseModel):
    artifacts: list[ArtifactIn] = Field(..., min_length=1)
    notes: str | None = None


class WithdrawRequest(BaseModel):
    notes: str | None = None


class ReviewRequest(BaseModel):
    decision: str = Field(..., pattern="^(approve|reject|partial|escalate)$")
    adjusted_weight_kg: float | None = Field(None, gt=0)
    notes: str | None = None


class DisputeResponse(BaseModel):
    dispute_id: UUID
    dispute_code: str
    company_id: UUID
    shipment_id: UUID
    source: str
    status: str
    category: str
    priority: str
    declared_weight_kg: float
    actual_weight_kg: float
    difference_kg: float
    percentage: float
    threshold_pct: float
    declared_cost: float
    actual_cost: float
    cost_difference: float
    charge_direction: str
    ratecard_version: str | None
    calculation_method: str
    zone: str | None
    auto_resolve_at: datetime
    submitted_to_courier_at: datetime | None
    courier_reference: str | None
    resolution_type: str | None
    final_weight_kg: float | None
    final_cost: float | None
    refund_amount: float | None
    debit_amount: float | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EvidenceResponse(BaseModel):
    evidence_id: UUID
    kind: str
    url: str
    captured_at: datetime | None
    has_scale: bool
    has_ruler: bool
    has_awb: bool
    timestamp_fresh: bool
    quality_score: float
    is_valid: bool
    suggestions: list[str] | None
    submitted_by: str | None
    submitted_at: datetime

    model_config = {"from_attributes": True}


class EventResponse(BaseModel):
    from_status: str | None
    to_status: str
    actor: str
    action: str
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class DisputeDetail(DisputeResponse):
    tracking_id: str
    evidence: list[EvidenceResponse] = []
    timeline: list[EventResponse] = []


# ─── Helpers ────────────────────────────────────────────────────────────────


async def _load_owned(lifecycle: DisputeLifecycleManager, ref: str, company_id: str, user: dict) -> WeightDispute:
    try:
        dispute = await lifecycle.load(ref)
    except DisputeNotFound:
        raise HTTPException(status_code=404, detail="Dispute not found")
    if str(dispute.company_id) != company_id and not is_admin(user):
        raise HTTPException(status_code=404, detail="Dispute not found")
    return dispute


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, DisputeNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidTransition, ShipmentBusy)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))


def _artifacts(body: EvidenceSubmission) -> list[EvidenceArtifact]:
    return [EvidenceArtifact(**artifact.model_dump()) for artifact in body.artifacts]


def _evidence_result(outcome) -> dict:
    return {
        "dispute_code": outcome.dispute.dispute_code,
        "status": outcome.dispute.status,
        "routed_to": outcome.routed_to,
        "validations": [
            {
                "is_valid": v.is_valid,
                "quality_score": v.quality_score,
                "has_scale": v.has_scale,
                "has_ruler": v.has_ruler,
                "has_awb": v.has_awb,
                "timestamp_fresh": v.timestamp_fresh,
                "suggestions": v.suggestions,
            }
            for v in outcome.validations
        ],
    }


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[DisputeResponse])
async def list_disputes(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    status: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    open_only: bool = False,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    """List disputes for the current company, newest first."""
    query = select(WeightDispute).where(WeightDispute.company_id == UUID(company_id))
    if status:
        query = query.where(WeightDispute.status == status)
    if category:
        query = query.where(WeightDispute.category == category)
    if priority:
        query = query.where(WeightDispute.priority == priority)
    if open_only:
        query = query.where(WeightDispute.status.in_(OPEN_STATUSES))
    result = await db.execute(query.order_by(WeightDispute.created_at.desc()).offset(skip).limit(limit))
    return result.scalars().all()


@router.get("/metrics")
async def dispute_metrics(
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    """
    Dispute health for the current company.

    fallback_pricing_rate is the share of disputes priced from the zone
    table instead of an authoritative quote; it should stay near zero.
    """
    company_uuid = UUID(company_id)
    by_status = dict(
        (
            await db.execute(
                select(WeightDispute.status, func.count())
                .where(WeightDispute.company_id == company_uuid)
                .group_by(WeightDispute.status)
            )
        ).all()
    )
    by_category = dict(
        (
            await db.execute(
                select(WeightDispute.category, func.count())
                .where(WeightDispute.company_id == company_uuid)
                .group_by(WeightDispute.category)
            )
        ).all()
    )
    totals = (
        await db.execute(
            select(
                func.count(),
                func.coalesce(
                    func.sum(case((WeightDispute.status.in_(OPEN_STATUSES), WeightDispute.cost_difference), else_=0)),
                    0,
                ),
                func.coalesce(
                    func.sum(case((WeightDispute.calculation_method == "fallback_zone", 1), else_=0)),
                    0,
                ),
            ).where(WeightDispute.company_id == company_uuid)
        )
    ).one()
    total, open_exposure, fallback = totals

    open_count = sum(by_status.get(s, 0) for s in OPEN_STATUSES)
    resolved = total - open_count
    return {
        "total": total,
        "open": open_count,
        "by_status": by_status,
        "by_category": by_category,
        "open_exposure": round(float(open_exposure), 2),
        "auto_accept_rate": round(by_status.get("auto_accepted", 0) / resolved, 4) if resolved else 0.0,
        "fallback_pricing_rate": round(fallback / total, 4) if total else 0.0,
    }


@router.get("/{ref}", response_model=DisputeDetail)
async def get_dispute(
    ref: str,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
):
    """Dispute by UUID or WD- code, with evidence and timeline."""
    dispute = await _load_owned(lifecycle, ref, company_id, user)
    shipment = await db.get(Shipment, dispute.shipment_id)
    evidence = (
        await db.execute(
            select(DisputeEvidence)
            .where(DisputeEvidence.dispute_id == dispute.dispute_id)
            .order_by(DisputeEvidence.submitted_at)
        )
    ).scalars()
    events = (
        await db.execute(
            select(DisputeEvent).where(DisputeEvent.dispute_id == dispute.dispute_id).order_by(DisputeEvent.created_at)
        )
    ).scalars()
    return DisputeDetail(
        **DisputeResponse.model_validate(dispute).model_dump(),
        tracking_id=shipment.tracking_id,
        evidence=[EvidenceResponse.model_validate(e) for e in evidence],
        timeline=[EventResponse.model_validate(e) for e in events],
    )


@router.post("/{ref}/accept", response_model=DisputeResponse)
async def accept_dispute(
    ref: str,
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
):
    """Seller accepts the carrier weight."""
    dispute = await _load_owned(lifecycle, ref, company_id, user)
    try:
        return await lifecycle.accept(dispute.dispute_id, actor=user.get("sub", "seller"))
    except (InvalidTransition, ShipmentBusy) as exc:
        raise _translate(exc)


@router.post("/{ref}/reject")
async def reject_dispute(
    ref: str,
    body: EvidenceSubmission,
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
):
    """Seller rejects the carrier weight; evidence is required."""
    dispute = await _load_owned(lifecycle, ref, company_id, user)
    try:
        outcome = await lifecycle.reject(
            dispute.dispute_id, _artifacts(body), actor=user.get("sub", "seller"), notes=body.notes
        )
    except (InvalidTransition, ShipmentBusy, ValueError) as exc:
        raise _translate(exc)
    return _evidence_result(outcome)


@router.post("/{ref}/evidence")
async def submit_evidence(
    ref: str,
    body: EvidenceSubmission,
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
):
    """
    Upload evidence. On a pending dispute this contests the carrier weight;
    on one already under way it is appended to the case file. Each artifact
    comes back with its quality score and remediation suggestions.
    """
    dispute = await _load_owned(lifecycle, ref, company_id, user)
    try:
        outcome = await lifecycle.submit_evidence(
            dispute.dispute_id, _artifacts(body), actor=user.get("sub", "seller"), notes=body.notes
        )
    except (InvalidTransition, ShipmentBusy, ValueError) as exc:
        raise _translate(exc)
    return _evidence_result(outcome)


@router.post("/{ref}/withdraw", response_model=DisputeResponse)
async def withdraw_dispute(
    ref: str,
    body: WithdrawRequest | None = None,
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
):
    dispute = await _load_owned(lifecycle, ref, company_id, user)
    try:
        return await lifecycle.withdraw(
            dispute.dispute_id, actor=user.get("sub", "seller"), notes=body.notes if body else None
        )
    except (InvalidTransition, ShipmentBusy) as exc:
        raise _translate(exc)


@router.post("/{ref}/review", response_model=DisputeResponse)
async def review_dispute(
    ref: str,
    body: ReviewRequest,
    admin: dict = Depends(require_admin),
    lifecycle: DisputeLifecycleManager = Depends(get_lifecycle),
):
    """Admin decision: approve (seller favor), reject, partial or escalate."""
    if body.decision == "partial" and body.adjusted_weight_kg is None:
        raise HTTPException(status_code=422, detail="A partial resolution needs adjusted_weight_kg")
    try:
        return await lifecycle.review(
            ref,
            body.decision,
            actor=admin.get("sub", "admin"),
            adjusted_weight_kg=body.adjusted_weight_kg,
            notes=body.notes,
        )
    except (DisputeNotFound, InvalidTransition, ShipmentBusy, InvalidMeasurement, ValueError) as exc:
        raise _translate(exc)
