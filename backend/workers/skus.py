"""
SKU Workers — weekly baseline backfill from verified shipment history.

Fanned out by workers.scheduler.dispatch_active_companies.
"""

import asyncio

import structlog

from db.session import build_engine, session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.skus.backfill_sku_baselines",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def backfill_sku_baselines(self, company_id: str, limit: int = 1000):
    from core.config import get_settings
    from weights.sku_learner import bulk_learn_from_history

    async def _backfill():
        engine = build_engine(get_settings().database_url)
        try:
            async with session_factory(engine)() as db:
                summary = await bulk_learn_from_history(db, company_id, limit=limit)
        finally:
            await engine.dispose()
        return {"status": "success", "company_id": company_id, **summary}

    try:
        return asyncio.run(_backfill())
    except Exception as exc:
        logger.error("skus.backfill_failed", company_id=company_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
