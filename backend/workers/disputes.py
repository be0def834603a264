"""
Dispute Workers — the background half of the dispute lifecycle.

Workers:
  1. auto_resolve_disputes: auto-accept disputes still pending past their deadline
  2. submit_to_carrier: send a contested dispute to the carrier, exponential backoff
  3. retry_settlements: re-drive ledger calls that failed, same idempotency key
  4. scan_unverified_shipments: report in-transit shipments with no carrier weight
"""

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.exceptions import CarrierSubmissionFailed, InvalidTransition, ShipmentBusy
from db.session import build_engine, session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()

settings = get_settings()


def build_lifecycle(db: AsyncSession):
    """Lifecycle manager wired to the production collaborators."""
    from alerts.notifications import CeleryNotificationSender
    from disputes.lifecycle import DisputeLifecycleManager
    from disputes.settlement import HttpSettlementExecutor
    from pricing.quoter import HttpPricingQuoter, PricingService

    return DisputeLifecycleManager(
        db,
        notifier=CeleryNotificationSender(),
        settlement_executor=HttpSettlementExecutor(),
        pricing=PricingService(HttpPricingQuoter()),
    )


@celery_app.task(
    name="workers.disputes.auto_resolve_disputes",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def auto_resolve_disputes(self, limit: int = 500):
    """Auto-accept every dispute whose grace period has elapsed with no seller action."""

    async def _sweep():
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                summary = await build_lifecycle(db).auto_resolve_due(limit=limit)
        finally:
            await engine.dispose()
        summary["completed_at"] = datetime.now(timezone.utc).isoformat()
        return summary

    try:
        return asyncio.run(_sweep())
    except Exception as exc:
        logger.error("disputes.sweep_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.disputes.submit_to_carrier",
    bind=True,
    max_retries=settings.carrier_submit_max_retries,
    acks_late=True,
)
def submit_to_carrier(self, dispute_id: str):
    """
    Submit one contested dispute to its carrier.

    Carrier failures retry with exponential backoff; once the retry budget
    is spent the dispute is escalated for manual handling.
    """
    from integrations.carrier_disputes import HttpCarrierDisputeSubmitter

    attempt = self.request.retries
    exhausted = attempt >= self.max_retries

    async def _submit():
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                lifecycle = build_lifecycle(db)
                try:
                    dispute = await lifecycle.submit_to_carrier(dispute_id, HttpCarrierDisputeSubmitter())
                except CarrierSubmissionFailed as exc:
                    dispute = await lifecycle.record_submission_failure(dispute_id, str(exc), exhausted=exhausted)
                    if not exhausted:
                        raise
                    return {"status": "escalated", "dispute_code": dispute.dispute_code, "attempts": attempt + 1}
                return {
                    "status": "submitted" if dispute.status == "under_review" else "skipped",
                    "dispute_code": dispute.dispute_code,
                    "dispute_status": dispute.status,
                    "courier_reference": dispute.courier_reference,
                }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_submit())
    except CarrierSubmissionFailed as exc:
        countdown = settings.carrier_submit_backoff_seconds * (2**attempt)
        logger.warning(
            "disputes.carrier_submission_retry",
            dispute_id=dispute_id,
            attempt=attempt + 1,
            countdown=countdown,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=countdown)
    except (InvalidTransition, ShipmentBusy) as exc:
        # Seller withdrew or an admin stepped in while we were talking to the carrier
        logger.info("disputes.carrier_submission_superseded", dispute_id=dispute_id, reason=str(exc))
        return {"status": "superseded", "dispute_id": dispute_id, "reason": str(exc)}


@celery_app.task(
    name="workers.disputes.retry_settlements",
    bind=True,
    max_retries=3,
    default_retry_delay=120,
    acks_late=True,
)
def retry_settlements(self, limit: int = 200):
    async def _retry():
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                return await build_lifecycle(db).retry_settlements(limit=limit)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_retry())
    except Exception as exc:
        logger.error("disputes.settlement_retry_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.disputes.scan_unverified_shipments",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def scan_unverified_shipments(self, older_than_minutes: int = 30, limit: int = 100):
    """Shipments moving without any carrier weight; likely a missing webhook."""
    from weights.records import find_unverified_shipments

    async def _scan():
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                shipments = await find_unverified_shipments(db, timedelta(minutes=older_than_minutes), limit=limit)
        finally:
            await engine.dispose()

        by_carrier: dict[str, int] = {}
        for shipment in shipments:
            by_carrier[shipment.carrier] = by_carrier.get(shipment.carrier, 0) + 1
        summary = {
            "status": "success",
            "unverified": len(shipments),
            "by_carrier": by_carrier,
            "tracking_ids": [s.tracking_id for s in shipments],
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }
        if shipments:
            logger.warning("disputes.unverified_shipments", unverified=len(shipments), by_carrier=by_carrier)
        else:
            logger.info("disputes.unverified_scan_clean")
        return summary

    try:
        return asyncio.run(_scan())
    except Exception as exc:
        logger.error("disputes.unverified_scan_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
