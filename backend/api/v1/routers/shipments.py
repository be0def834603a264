"""
Shipments Router — registration, weight history and transit status.
"""

from datetime import datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_company_id, get_tenant_db
from core.exceptions import InvalidMeasurement, ShipmentNotFound
from db.models import Shipment
from weights import records

router = APIRouter(prefix="/api/v1/shipments", tags=["shipments"])

SHIPMENT_STATUSES = ("created", "picked_up", "in_transit", "out_for_delivery", "delivered", "rto", "cancelled")


# ─── Schemas ────────────────────────────────────────────────────────────────


class ShipmentCreate(BaseModel):
    tracking_id: str = Field(..., min_length=1, max_length=64)
    carrier: str = Field(..., min_length=1, max_length=50)
    origin_pincode: str = Field(..., pattern=r"^\d{6}$")
    destination_pincode: str = Field(..., pattern=r"^\d{6}$")
    declared_weight: float = Field(..., gt=0)
    weight_unit: str = "kg"
    length: float | None = Field(None, gt=0)
    width: float | None = Field(None, gt=0)
    height: float | None = Field(None, gt=0)
    dimension_unit: str = "cm"
    payment_mode: str = Field("prepaid", pattern="^(prepaid|cod)$")
    order_value: float = Field(0.0, ge=0)
    sku: str | None = None
    item_count: int = Field(1, ge=1)
    order_ref: str | None = None
    service_type: str | None = None
    dim_divisor: int | None = Field(None, gt=0)
    shipping_cost: float | None = Field(None, ge=0)


class StatusUpdate(BaseModel):
    status: str


class ObservationResponse(BaseModel):
    observation_id: UUID
    stage: str
    value_kg: float
    length_cm: float | None
    width_cm: float | None
    height_cm: float | None
    source: str
    location: str | None
    observed_at: datetime

    model_config = {"from_attributes": True}


class ShipmentResponse(BaseModel):
    shipment_id: UUID
    company_id: UUID
    tracking_id: str
    carrier: str
    status: str
    origin_pincode: str
    destination_pincode: str
    payment_mode: str
    order_value: float
    declared_weight_kg: float
    declared_length_cm: float | None
    declared_width_cm: float | None
    declared_height_cm: float | None
    sku: str | None
    item_count: int
    weight_status: str
    billing_weight_kg: float | None
    verified_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ShipmentDetail(ShipmentResponse):
    observations: list[ObservationResponse] = []


# ─── Helpers ────────────────────────────────────────────────────────────────


async def _owned_shipment(db: AsyncSession, tracking_id: str, company_id: str) -> Shipment:
    try:
        shipment = await records.get_shipment_by_tracking(db, tracking_id)
    except ShipmentNotFound:
        raise HTTPException(status_code=404, detail="Shipment not found")
    if str(shipment.company_id) != company_id:
        raise HTTPException(status_code=404, detail="Shipment not found")
    return shipment


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/", response_model=ShipmentResponse, status_code=201)
async def register_shipment(
    body: ShipmentCreate,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    """Register a shipment and its declared weight."""
    try:
        shipment = await records.register_shipment(db, company_id, **body.model_dump())
    except InvalidMeasurement as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return shipment


@router.get("/", response_model=list[ShipmentResponse])
async def list_shipments(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    weight_status: str | None = None,
    carrier: str | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    query = select(Shipment).where(Shipment.company_id == UUID(company_id))
    if weight_status:
        query = query.where(Shipment.weight_status == weight_status)
    if carrier:
        query = query.where(Shipment.carrier == carrier.lower())
    result = await db.execute(query.order_by(Shipment.created_at.desc()).offset(skip).limit(limit))
    return result.scalars().all()


@router.get("/unverified", response_model=list[ShipmentResponse])
async def list_unverified(
    older_than_minutes: int = Query(30, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    """In-transit shipments still waiting on a carrier weight."""
    shipments = await records.find_unverified_shipments(db, timedelta(minutes=older_than_minutes), limit=limit)
    return [s for s in shipments if str(s.company_id) == company_id]


@router.get("/{tracking_id}", response_model=ShipmentDetail)
async def get_shipment(
    tracking_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    """Shipment with its full weight history."""
    shipment = await _owned_shipment(db, tracking_id, company_id)
    observations = await records.list_observations(db, shipment.shipment_id)
    return ShipmentDetail(
        **ShipmentResponse.model_validate(shipment).model_dump(),
        observations=[ObservationResponse.model_validate(o) for o in observations],
    )


@router.post("/{tracking_id}/status", response_model=ShipmentResponse)
async def update_status(
    tracking_id: str,
    body: StatusUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    company_id: str = Depends(get_company_id),
):
    if body.status not in SHIPMENT_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown shipment status '{body.status}'")
    shipment = await _owned_shipment(db, tracking_id, company_id)
    shipment.status = body.status
    shipment.updated_at = datetime.utcnow()
    await db.commit()
    return shipment
