"""
Shipment weight history.

A shipment owns an ordered list of weight observations tagged by stage
(declared → packed → applied → scanned → billing). Exactly one ``declared``
entry is written at registration; ``billing`` is written only by dispute
resolution.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import InvalidMeasurement, ShipmentNotFound
from db.models import Shipment, WeightObservation
from weights.converter import Dimensions, dimensions_or_none, to_dimensions, to_kilograms

logger = structlog.get_logger()

CARRIER_STAGES = ("packed", "applied", "scanned")
IN_TRANSIT_STATUSES = ("picked_up", "in_transit", "out_for_delivery")


async def register_shipment(
    db: AsyncSession,
    company_id,
    *,
    tracking_id: str,
    carrier: str,
    origin_pincode: str,
    destination_pincode: str,
    declared_weight: float,
    weight_unit: str = "kg",
    length: float | None = None,
    width: float | None = None,
    height: float | None = None,
    dimension_unit: str = "cm",
    payment_mode: str = "prepaid",
    order_value: float = 0.0,
    sku: str | None = None,
    item_count: int = 1,
    order_ref: str | None = None,
    service_type: str | None = None,
    dim_divisor: int | None = None,
    shipping_cost: float | None = None,
) -> Shipment:
    """Create a shipment together with its single ``declared`` observation."""
    declared_kg = to_kilograms(declared_weight, weight_unit)
    dims = dimensions_or_none(length, width, height, dimension_unit)
    if payment_mode not in ("prepaid", "cod"):
        raise InvalidMeasurement(f"Unknown payment mode '{payment_mode}'")
    if item_count < 1:
        raise InvalidMeasurement("item_count must be at least 1")

    company_uuid = company_id if isinstance(company_id, uuid.UUID) else uuid.UUID(str(company_id))
    now = datetime.utcnow()
    shipment = Shipment(
        shipment_id=uuid.uuid4(),
        company_id=company_uuid,
        order_ref=order_ref,
        tracking_id=tracking_id,
        carrier=carrier.lower(),
        service_type=service_type,
        status="created",
        origin_pincode=origin_pincode,
        destination_pincode=destination_pincode,
        payment_mode=payment_mode,
        order_value=order_value,
        dim_divisor=dim_divisor,
        declared_weight_kg=declared_kg,
        declared_length_cm=dims.length if dims else None,
        declared_width_cm=dims.width if dims else None,
        declared_height_cm=dims.height if dims else None,
        sku=sku,
        item_count=item_count,
        shipping_cost=shipping_cost,
        weight_status="unverified",
        created_at=now,
        updated_at=now,
    )
    db.add(shipment)
    db.add(
        WeightObservation(
            shipment_id=shipment.shipment_id,
            stage="declared",
            value_kg=declared_kg,
            length_cm=shipment.declared_length_cm,
            width_cm=shipment.declared_width_cm,
            height_cm=shipment.declared_height_cm,
            source="manual",
            observed_at=now,
        )
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise InvalidMeasurement(f"Tracking ID '{tracking_id}' is already registered") from exc

    logger.info(
        "records.shipment_registered",
        shipment_id=str(shipment.shipment_id),
        tracking_id=tracking_id,
        carrier=shipment.carrier,
        declared_kg=declared_kg,
    )
    return shipment


def declared_dimensions(shipment: Shipment) -> Dimensions | None:
    if shipment.declared_length_cm is None:
        return None
    return to_dimensions(shipment.declared_length_cm, shipment.declared_width_cm, shipment.declared_height_cm)


async def get_shipment_by_tracking(db: AsyncSession, tracking_id: str) -> Shipment:
    result = await db.execute(
        select(Shipment).where(Shipment.tracking_id == tracking_id).execution_options(populate_existing=True)
    )
    shipment = result.scalar_one_or_none()
    if shipment is None:
        raise ShipmentNotFound(f"No shipment with tracking ID '{tracking_id}'")
    return shipment


async def list_observations(db: AsyncSession, shipment_id) -> list[WeightObservation]:
    result = await db.execute(
        select(WeightObservation)
        .where(WeightObservation.shipment_id == shipment_id)
        .order_by(WeightObservation.observed_at, WeightObservation.recorded_at)
    )
    return list(result.scalars().all())


async def is_duplicate_observation(
    db: AsyncSession,
    shipment_id,
    stage: str,
    value_kg: float,
    observed_at: datetime,
) -> bool:
    """Same stage, value and scan time means a redelivered webhook."""
    result = await db.execute(
        select(WeightObservation.observation_id).where(
            WeightObservation.shipment_id == shipment_id,
            WeightObservation.stage == stage,
            WeightObservation.value_kg == value_kg,
            WeightObservation.observed_at == observed_at,
        )
    )
    return result.first() is not None


def add_observation(
    db: AsyncSession,
    shipment: Shipment,
    *,
    stage: str,
    value_kg: float,
    source: str,
    observed_at: datetime,
    dims: Dimensions | None = None,
    location: str | None = None,
    external_ref: str | None = None,
) -> WeightObservation:
    if stage in ("declared", "billing"):
        raise ValueError(f"'{stage}' observations are written by registration / resolution only")
    observation = WeightObservation(
        shipment_id=shipment.shipment_id,
        stage=stage,
        value_kg=value_kg,
        length_cm=dims.length if dims else None,
        width_cm=dims.width if dims else None,
        height_cm=dims.height if dims else None,
        source=source,
        location=location,
        external_ref=external_ref,
        observed_at=observed_at,
    )
    db.add(observation)
    return observation


async def find_unverified_shipments(
    db: AsyncSession,
    older_than: timedelta = timedelta(minutes=30),
    limit: int = 100,
    now: datetime | None = None,
) -> list[Shipment]:
    """In-transit shipments with no carrier weight after the grace window."""
    cutoff = (now or datetime.utcnow()) - older_than
    carrier_weight = exists().where(
        and_(
            WeightObservation.shipment_id == Shipment.shipment_id,
            WeightObservation.stage.in_(CARRIER_STAGES),
        )
    )
    result = await db.execute(
        select(Shipment)
        .where(
            Shipment.status.in_(IN_TRANSIT_STATUSES),
            Shipment.weight_status == "unverified",
            Shipment.updated_at <= cutoff,
            ~carrier_weight,
        )
        .order_by(Shipment.updated_at)
        .limit(limit)
    )
    return list(result.scalars().all())
