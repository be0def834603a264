"""
Fraud Pattern Analyzer — per-company statistical signals over recent disputes.

Signals (each in [0, 1]) over a rolling window:
  systematic_underweight   share of disputes where the carrier weight beat the declared one
  repeated_percentage      share held by the most common rounded discrepancy %
  bulk_attempts            disputes opened in the last 24h / bulk threshold (capped)
  unevidenced_high_value   share of high-value disputes with no evidence at all

The score is the confidence-weighted mean of the signals. Above the cutoff
the company is flagged, its open disputes become urgent, and anything still
pending is routed to manual review.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pandas as pd
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.exceptions import InvalidTransition
from db.models import Company, DisputeEvidence, WeightDispute
from disputes.lifecycle import OPEN_STATUSES, DisputeLifecycleManager, company_high_value_threshold

logger = structlog.get_logger()

SIGNAL_WEIGHTS = {
    "systematic_underweight": 0.35,
    "repeated_percentage": 0.25,
    "bulk_attempts": 0.20,
    "unevidenced_high_value": 0.20,
}


@dataclass
class FraudAssessment:
    company_id: str
    score: float
    dispute_count: int
    flagged: bool
    signals: dict[str, float] = field(default_factory=dict)
    escalated: list[str] = field(default_factory=list)


def score_disputes(
    frame: pd.DataFrame,
    now: datetime,
    bulk_threshold: int,
    high_value_threshold: float,
) -> tuple[float, dict[str, float]]:
    """Score a window of disputes. Expects declared/actual weights, percentage,
    cost_difference, created_at and evidence_count columns."""
    if frame.empty:
        return 0.0, {name: 0.0 for name in SIGNAL_WEIGHTS}

    underweight = float((frame["actual_weight_kg"] > frame["declared_weight_kg"]).mean())

    rounded = frame["percentage"].round().astype(int)
    repeated = float(rounded.value_counts(normalize=True).iloc[0])

    recent = int((frame["created_at"] >= now - timedelta(hours=24)).sum())
    bulk = min(1.0, recent / bulk_threshold) if bulk_threshold > 0 else 0.0

    high_value = frame[frame["cost_difference"].abs() >= high_value_threshold]
    unevidenced = float((high_value["evidence_count"] == 0).mean()) if len(high_value) else 0.0

    signals = {
        "systematic_underweight": round(underweight, 4),
        "repeated_percentage": round(repeated, 4),
        "bulk_attempts": round(bulk, 4),
        "unevidenced_high_value": round(unevidenced, 4),
    }
    total_weight = sum(SIGNAL_WEIGHTS.values())
    score = sum(SIGNAL_WEIGHTS[name] * value for name, value in signals.items()) / total_weight
    return round(min(1.0, max(0.0, score)), 4), signals


async def load_dispute_window(db: AsyncSession, company_id: uuid.UUID, since: datetime) -> pd.DataFrame:
    evidence_counts = (
        select(DisputeEvidence.dispute_id, func.count(DisputeEvidence.evidence_id).label("evidence_count"))
        .group_by(DisputeEvidence.dispute_id)
        .subquery()
    )
    result = await db.execute(
        select(
            WeightDispute.dispute_id,
            WeightDispute.declared_weight_kg,
            WeightDispute.actual_weight_kg,
            WeightDispute.percentage,
            WeightDispute.cost_difference,
            WeightDispute.created_at,
            func.coalesce(evidence_counts.c.evidence_count, 0).label("evidence_count"),
        )
        .outerjoin(evidence_counts, evidence_counts.c.dispute_id == WeightDispute.dispute_id)
        .where(WeightDispute.company_id == company_id, WeightDispute.created_at >= since)
    )
    rows = [dict(row._mapping) for row in result.all()]
    columns = [
        "dispute_id",
        "declared_weight_kg",
        "actual_weight_kg",
        "percentage",
        "cost_difference",
        "created_at",
        "evidence_count",
    ]
    return pd.DataFrame(rows, columns=columns)


async def analyze_company(
    db: AsyncSession,
    company_id,
    lifecycle: DisputeLifecycleManager,
    now: datetime | None = None,
) -> FraudAssessment:
    settings = get_settings()
    now = now or datetime.utcnow()
    company_uuid = company_id if isinstance(company_id, uuid.UUID) else uuid.UUID(str(company_id))
    company = await db.get(Company, company_uuid)
    if company is None:
        raise ValueError(f"Company {company_id} not found")

    frame = await load_dispute_window(db, company_uuid, now - timedelta(days=settings.fraud_window_days))
    if len(frame) < settings.fraud_min_disputes:
        score, signals = 0.0, {name: 0.0 for name in SIGNAL_WEIGHTS}
    else:
        score, signals = score_disputes(
            frame,
            now,
            settings.fraud_bulk_threshold,
            company_high_value_threshold(company),
        )

    flagged = score > settings.fraud_score_cutoff
    newly_flagged = flagged and not company.suspicious_fraud
    company.fraud_score = score
    company.fraud_signals = signals
    company.fraud_checked_at = now
    company.suspicious_fraud = flagged
    await db.commit()

    assessment = FraudAssessment(
        company_id=str(company_uuid),
        score=score,
        dispute_count=len(frame),
        flagged=flagged,
        signals=signals,
    )
    logger.info(
        "fraud.analyzed",
        company_id=assessment.company_id,
        score=score,
        disputes=len(frame),
        flagged=flagged,
        **signals,
    )

    if not flagged:
        return assessment

    await db.execute(
        update(WeightDispute)
        .where(WeightDispute.company_id == company_uuid, WeightDispute.status.in_(OPEN_STATUSES))
        .values(priority="urgent", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    pending = await db.execute(
        select(WeightDispute.dispute_id).where(
            WeightDispute.company_id == company_uuid,
            WeightDispute.status == "pending",
        )
    )
    for (dispute_id,) in pending.all():
        try:
            dispute = await lifecycle.escalate(
                dispute_id,
                "fraud_analyzer",
                f"Fraud score {score:.2f} exceeds {settings.fraud_score_cutoff:.2f}",
            )
        except InvalidTransition as exc:
            logger.info("fraud.escalation_skipped", dispute_id=str(dispute_id), reason=str(exc))
            continue
        assessment.escalated.append(dispute.dispute_code)

    if newly_flagged:
        await lifecycle.notifier.send(
            assessment.company_id,
            "weight_fraud_flagged",
            {"score": score, "escalated": len(assessment.escalated)},
        )
    return assessment
