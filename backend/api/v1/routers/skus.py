"""
SKUs Router — learned weight profiles, suggestions and weight freezes.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_company_id, get_current_user, get_tenant_db, require_admin
from core.exceptions import InvalidMeasurement, ShipmentBusy, SKUNotFound
from db.models import SKUWeightMaster
from weights import sku_learner

router = APIRouter(prefix="/api/v1/skus", tags=["skus"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class SKUWeightResponse(BaseModel):
    sku: str
    product_name: str | None
    sample_count: int
    mean_kg: float
    stddev_kg: float
    min_kg: float | None
    max_kg: float | None
    standard_weight_kg: float | None
    confidence: float
    status: str
    freeze_enabled: bool
    frozen_weight_kg: float | None
    freeze_reason: str | None
    frozen_by: str | None
    freeze_expires_at: datetime | None
    total_disputes: int
    disputes_seller_favor: int
    disputes_carrier_favor: int
    last_sample_at: datetime | None
    updated_at: datetime

    model_config = {"from_attributes": True}


class FreezeRequest(BaseModel):
    weight_kg: float = Field(..., gt=0)
    reason: str = Field(..., min_length=3)
    expires_at: datetime | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[SKUWeightResponse])
async def list_skus(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    status: str | None = None,
    frozen: bool | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    query = select(SKUWeightMaster).where(SKUWeightMaster.company_id == UUID(company_id))
    if status:
        query = query.where(SKUWeightMaster.status == status)
    if frozen is not None:
        query = query.where(SKUWeightMaster.freeze_enabled.is_(frozen))
    result = await db.execute(query.order_by(SKUWeightMaster.sku).offset(skip).limit(limit))
    return result.scalars().all()


@router.post("/backfill")
async def backfill_baselines(
    limit: int = Query(1000, ge=1, le=10000),
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
    admin: dict = Depends(require_admin),
):
    """Seed SKU baselines from verified single-item shipments that predate learning."""
    return await sku_learner.bulk_learn_from_history(db, company_id, limit=limit)


@router.get("/{sku}", response_model=SKUWeightResponse)
async def get_sku(
    sku: str,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    master = await sku_learner.get_master(db, company_id, sku)
    if master is None:
        raise HTTPException(status_code=404, detail=f"SKU '{sku}' has no weight profile")
    return master


@router.get("/{sku}/suggestion")
async def get_suggestion(
    sku: str,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    """
    Suggested declared weight for a SKU. ``weight_kg`` is null when the
    profile is not confident enough; the seller must enter a weight by hand.
    """
    suggestion = await sku_learner.suggest_weight(db, company_id, sku)
    if suggestion is None:
        return {"sku": sku, "weight_kg": None, "source": None, "confidence": None}
    return {
        "sku": suggestion.sku,
        "weight_kg": suggestion.weight_kg,
        "source": suggestion.source,
        "confidence": suggestion.confidence,
        "variability": suggestion.variability,
        "sample_count": suggestion.sample_count,
    }


@router.post("/{sku}/freeze", response_model=SKUWeightResponse)
async def freeze_sku(
    sku: str,
    body: FreezeRequest,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
):
    """Pin a SKU's weight. Learning pauses until unfrozen or expired."""
    try:
        return await sku_learner.freeze_weight(
            db,
            company_id,
            sku,
            body.weight_kg,
            reason=body.reason,
            frozen_by=user.get("sub", "seller"),
            expires_at=body.expires_at,
        )
    except InvalidMeasurement as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except ShipmentBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/{sku}/unfreeze", response_model=SKUWeightResponse)
async def unfreeze_sku(
    sku: str,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
    user: dict = Depends(get_current_user),
):
    try:
        return await sku_learner.unfreeze_weight(db, company_id, sku, actor=user.get("sub", "seller"))
    except SKUNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ShipmentBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc))
