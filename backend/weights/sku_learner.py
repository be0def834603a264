"""
SKU Weight Learner — per-product weight baselines.

Each verified (or dispute-resolved) single-item shipment feeds its final
weight into the SKU's running statistics with Welford's online algorithm,
so no raw history is kept. Confidence blends sample size with the
coefficient of variation; a SKU becomes ``active`` once it has enough
tightly-clustered samples.

Updates for one SKU are serialized with the keyed lock and committed here,
after the caller's own shipment transaction has committed.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime

import pandas as pd
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.exceptions import InvalidMeasurement, SKUNotFound
from db.models import Shipment, SKUWeightMaster, WeightObservation
from disputes.locks import locks, sku_key

logger = structlog.get_logger()

MAX_SIZE_POINTS = 60.0
DISPUTE_RATE_TOLERANCE = 0.10
MAX_DISPUTE_PENALTY = 20.0

# CV ceiling → confidence points
CV_POINTS = (
    (0.02, 40.0),
    (0.05, 30.0),
    (0.10, 20.0),
    (0.15, 10.0),
)


@dataclass
class WeightSuggestion:
    sku: str
    weight_kg: float
    source: str  # frozen | learned
    confidence: float
    variability: str | None = None
    sample_count: int = 0


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def coefficient_of_variation(mean: float, stddev: float) -> float:
    return stddev / mean if mean > 0 else float("inf")


def compute_confidence(sample_count: int, mean: float, stddev: float) -> float:
    if sample_count <= 0:
        return 0.0
    size_points = min(MAX_SIZE_POINTS, math.log10(sample_count + 1) * 30)
    cv = coefficient_of_variation(mean, stddev)
    cv_points = 0.0
    for ceiling, points in CV_POINTS:
        if cv < ceiling:
            cv_points = points
            break
    return round(min(100.0, size_points + cv_points), 2)


def dispute_penalty(master: SKUWeightMaster) -> float:
    """Up to 20 points off when more than 10% of samples ended in a dispute."""
    if not master.sample_count or not master.total_disputes:
        return 0.0
    rate = master.total_disputes / master.sample_count
    if rate <= DISPUTE_RATE_TOLERANCE:
        return 0.0
    return round(min(MAX_DISPUTE_PENALTY, (rate - DISPUTE_RATE_TOLERANCE) * 100), 2)


def variability_label(mean: float, stddev: float) -> str:
    cv = coefficient_of_variation(mean, stddev)
    if cv < 0.05:
        return "low"
    if cv < 0.15:
        return "medium"
    return "high"


def welford_update(master: SKUWeightMaster, weight_kg: float) -> None:
    n = (master.sample_count or 0) + 1
    mean = master.mean_kg or 0.0
    delta = weight_kg - mean
    mean += delta / n
    m2 = (master.m2 or 0.0) + delta * (weight_kg - mean)

    master.sample_count = n
    master.mean_kg = mean
    master.m2 = m2
    master.stddev_kg = math.sqrt(m2 / (n - 1)) if n > 1 else 0.0
    master.min_kg = weight_kg if master.min_kg is None else min(master.min_kg, weight_kg)
    master.max_kg = weight_kg if master.max_kg is None else max(master.max_kg, weight_kg)


def welford_merge(master: SKUWeightMaster, count: int, mean: float, m2: float, min_kg: float, max_kg: float) -> None:
    """Fold a batch's (count, mean, M2) into the running statistics (Chan et al.)."""
    n_a = master.sample_count or 0
    n = n_a + count
    delta = mean - (master.mean_kg or 0.0)

    master.mean_kg = (master.mean_kg or 0.0) + delta * count / n
    master.m2 = (master.m2 or 0.0) + m2 + delta * delta * n_a * count / n
    master.sample_count = n
    master.stddev_kg = math.sqrt(master.m2 / (n - 1)) if n > 1 else 0.0
    master.min_kg = min_kg if master.min_kg is None else min(master.min_kg, min_kg)
    master.max_kg = max_kg if master.max_kg is None else max(master.max_kg, max_kg)


def refresh_status(master: SKUWeightMaster) -> None:
    settings = get_settings()
    master.confidence = max(
        0.0,
        compute_confidence(master.sample_count, master.mean_kg, master.stddev_kg) - dispute_penalty(master),
    )
    promoted = (
        master.sample_count >= settings.sku_min_samples
        and master.stddev_kg < settings.sku_max_cv * master.mean_kg
    )
    master.status = "active" if promoted else "learning"
    master.standard_weight_kg = round(master.mean_kg, 3) if master.sample_count else None


def freeze_active(master: SKUWeightMaster, now: datetime | None = None) -> bool:
    if not master.freeze_enabled:
        return False
    if master.freeze_expires_at is None:
        return True
    return master.freeze_expires_at > (now or datetime.utcnow())


async def get_master(db: AsyncSession, company_id, sku: str) -> SKUWeightMaster | None:
    result = await db.execute(
        select(SKUWeightMaster).where(
            SKUWeightMaster.company_id == _as_uuid(company_id),
            SKUWeightMaster.sku == sku,
        )
    )
    return result.scalar_one_or_none()


async def _get_or_create(db: AsyncSession, company_id, sku: str) -> SKUWeightMaster:
    master = await get_master(db, company_id, sku)
    if master is None:
        master = SKUWeightMaster(
            company_id=_as_uuid(company_id),
            sku=sku,
            sample_count=0,
            mean_kg=0.0,
            m2=0.0,
            stddev_kg=0.0,
            confidence=0.0,
            status="learning",
            freeze_enabled=False,
            total_disputes=0,
            disputes_seller_favor=0,
            disputes_carrier_favor=0,
        )
        db.add(master)
    return master


async def record_sample(
    db: AsyncSession,
    company_id,
    sku: str,
    weight_kg: float,
    observed_at: datetime | None = None,
) -> SKUWeightMaster | None:
    """Ingest one final weight. Returns None when learning is paused by a freeze."""
    if weight_kg is None or weight_kg <= 0:
        raise InvalidMeasurement(f"SKU sample weight must be positive, got {weight_kg!r}")

    async with locks.hold(sku_key(company_id, sku)):
        master = await _get_or_create(db, company_id, sku)
        if freeze_active(master):
            logger.info("sku_learner.skipped_frozen", company_id=str(company_id), sku=sku)
            return None

        previous_status = master.status
        welford_update(master, weight_kg)
        refresh_status(master)
        now = observed_at or datetime.utcnow()
        master.first_sample_at = master.first_sample_at or now
        master.last_sample_at = now
        await db.commit()

    if previous_status != master.status:
        logger.info(
            "sku_learner.status_changed",
            company_id=str(company_id),
            sku=sku,
            status=master.status,
            samples=master.sample_count,
            confidence=master.confidence,
        )
    return master


async def learn_from_shipment(db: AsyncSession, shipment: Shipment, final_weight_kg: float) -> SKUWeightMaster | None:
    """Feed a shipment's final weight, only when it carried exactly one unit of one SKU."""
    if not shipment.sku or (shipment.item_count or 0) != 1 or shipment.sku_learned_at is not None:
        return None
    master = await record_sample(db, shipment.company_id, shipment.sku, final_weight_kg)
    if master is not None:
        shipment.sku_learned_at = datetime.utcnow()
        await db.commit()
    return master


async def bulk_learn_from_history(db: AsyncSession, company_id, limit: int = 1000) -> dict:
    """
    Backfill SKU baselines from verified single-item shipments not yet learned.

    A verified shipment's first carrier reading is the one that verified it;
    an earlier reading outside the threshold would have opened a dispute.
    Frozen SKUs are left untouched and their shipments stay unlearned.
    """
    company_uuid = _as_uuid(company_id)
    result = await db.execute(
        select(
            Shipment.shipment_id,
            Shipment.sku,
            WeightObservation.value_kg,
        )
        .join(WeightObservation, WeightObservation.shipment_id == Shipment.shipment_id)
        .where(
            Shipment.company_id == company_uuid,
            Shipment.weight_status == "verified",
            Shipment.sku.is_not(None),
            Shipment.item_count == 1,
            Shipment.sku_learned_at.is_(None),
            WeightObservation.stage.not_in(("declared", "billing")),
        )
        .order_by(Shipment.created_at, WeightObservation.recorded_at)
    )
    frame = pd.DataFrame(result.all(), columns=["shipment_id", "sku", "value_kg"])
    summary = {"shipments": 0, "skus": 0, "skipped_frozen": 0}
    if frame.empty:
        return summary

    samples = frame.drop_duplicates("shipment_id", keep="first").head(limit)
    samples = samples.assign(
        dev2=(samples["value_kg"] - samples.groupby("sku")["value_kg"].transform("mean")) ** 2
    )
    batches = samples.groupby("sku").agg(
        count=("value_kg", "count"),
        mean=("value_kg", "mean"),
        m2=("dev2", "sum"),
        min_kg=("value_kg", "min"),
        max_kg=("value_kg", "max"),
    )

    now = datetime.utcnow()
    for sku, batch in batches.iterrows():
        async with locks.hold(sku_key(company_id, sku)):
            master = await _get_or_create(db, company_id, sku)
            if freeze_active(master):
                summary["skipped_frozen"] += 1
                continue
            welford_merge(
                master,
                int(batch["count"]),
                float(batch["mean"]),
                float(batch["m2"]),
                float(batch["min_kg"]),
                float(batch["max_kg"]),
            )
            refresh_status(master)
            master.first_sample_at = master.first_sample_at or now
            master.last_sample_at = now
            shipment_ids = samples.loc[samples["sku"] == sku, "shipment_id"].tolist()
            await db.execute(
                update(Shipment).where(Shipment.shipment_id.in_(shipment_ids)).values(sku_learned_at=now)
            )
            await db.commit()
        summary["shipments"] += len(shipment_ids)
        summary["skus"] += 1

    logger.info("sku_learner.backfilled", company_id=str(company_id), **summary)
    return summary


async def record_dispute_outcome(db: AsyncSession, company_id, sku: str, seller_favor: bool) -> SKUWeightMaster | None:
    async with locks.hold(sku_key(company_id, sku)):
        master = await get_master(db, company_id, sku)
        if master is None:
            return None
        master.total_disputes = (master.total_disputes or 0) + 1
        if seller_favor:
            master.disputes_seller_favor = (master.disputes_seller_favor or 0) + 1
        else:
            master.disputes_carrier_favor = (master.disputes_carrier_favor or 0) + 1
        master.last_dispute_at = datetime.utcnow()
        refresh_status(master)
        await db.commit()
    return master


async def suggest_weight(db: AsyncSession, company_id, sku: str) -> WeightSuggestion | None:
    """Frozen weight if pinned, else the learned weight at ≥70 confidence, else None."""
    master = await get_master(db, company_id, sku)
    if master is None:
        return None

    if freeze_active(master):
        return WeightSuggestion(
            sku=sku,
            weight_kg=master.frozen_weight_kg,
            source="frozen",
            confidence=100.0,
            sample_count=master.sample_count,
        )

    settings = get_settings()
    if master.confidence < settings.sku_suggest_confidence or master.standard_weight_kg is None:
        return None

    return WeightSuggestion(
        sku=sku,
        weight_kg=master.standard_weight_kg,
        source="learned",
        confidence=master.confidence,
        variability=variability_label(master.mean_kg, master.stddev_kg),
        sample_count=master.sample_count,
    )


async def freeze_weight(
    db: AsyncSession,
    company_id,
    sku: str,
    weight_kg: float,
    reason: str,
    frozen_by: str,
    expires_at: datetime | None = None,
) -> SKUWeightMaster:
    if weight_kg is None or weight_kg <= 0:
        raise InvalidMeasurement("Frozen weight must be a positive number of kilograms")
    if expires_at is not None:
        if expires_at.tzinfo is not None:
            expires_at = expires_at.replace(tzinfo=None)
        if expires_at <= datetime.utcnow():
            raise InvalidMeasurement("Freeze expiry must be in the future")

    async with locks.hold(sku_key(company_id, sku)):
        master = await _get_or_create(db, company_id, sku)
        master.freeze_enabled = True
        master.frozen_weight_kg = round(weight_kg, 3)
        master.freeze_reason = reason
        master.frozen_by = frozen_by
        master.frozen_at = datetime.utcnow()
        master.freeze_expires_at = expires_at
        await db.commit()

    logger.info(
        "sku_learner.frozen",
        company_id=str(company_id),
        sku=sku,
        weight_kg=weight_kg,
        frozen_by=frozen_by,
        expires_at=expires_at.isoformat() if expires_at else None,
    )
    return master


async def unfreeze_weight(db: AsyncSession, company_id, sku: str, actor: str) -> SKUWeightMaster:
    async with locks.hold(sku_key(company_id, sku)):
        master = await get_master(db, company_id, sku)
        if master is None:
            raise SKUNotFound(f"SKU '{sku}' has no weight profile")
        master.freeze_enabled = False
        master.freeze_expires_at = None
        await db.commit()

    logger.info("sku_learner.unfrozen", company_id=str(company_id), sku=sku, actor=actor)
    return master
