"""
Company fan-out for Celery beat.

Beat entries name one company-scoped job (nightly fraud scoring, SKU
baseline backfill) and this task queues it once per selling company.
Suspended and inactive sellers are skipped. ``shipped_within_days`` narrows
the run to sellers that registered a shipment recently, since the fraud
signals and SKU baselines only move when new shipments arrive.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import exists, select

from workers.celery_app import celery_app

logger = structlog.get_logger()

SELLING_STATUSES = ("active", "trial")


@celery_app.task(
    name="workers.scheduler.dispatch_active_companies",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_companies(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
    stagger_seconds: int = 0,
    shipped_within_days: int | None = None,
):
    """Queue ``task_name`` with ``company_id=<id>`` for every selling company."""
    from core.config import get_settings
    from db.models import Company, Shipment
    from db.session import build_engine, session_factory

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or SELLING_STATUSES)

    # Only our own company-scoped jobs may be fanned out
    if not task_name.startswith("workers."):
        logger.warning("scheduler.rejected_task", task_name=task_name, run_id=run_id)
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _select_companies() -> list[str]:
        engine = build_engine(get_settings().database_url)
        try:
            query = select(Company.company_id).where(Company.status.in_(selected_statuses))
            if shipped_within_days is not None:
                since = datetime.utcnow() - timedelta(days=shipped_within_days)
                query = query.where(
                    exists().where(Shipment.company_id == Company.company_id, Shipment.created_at >= since)
                )
            async with session_factory(engine)() as db:
                result = await db.execute(query.order_by(Company.created_at))
                return [str(row.company_id) for row in result.all()]
        finally:
            await engine.dispose()

    try:
        companies = asyncio.run(_select_companies())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.company_lookup_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    for index, company_id in enumerate(companies):
        celery_app.send_task(
            task_name,
            kwargs={**payload, "company_id": company_id},
            countdown=index * stagger_seconds,
        )

    summary = {
        "status": "success",
        "task_name": task_name,
        "company_count": len(companies),
        "dispatched_count": len(companies),
        "statuses": list(selected_statuses),
        "stagger_seconds": stagger_seconds,
        "shipped_within_days": shipped_within_days,
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }
    logger.info("scheduler.companies_dispatched", **summary)
    return summary
