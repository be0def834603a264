"""
Fraud Workers — daily per-company dispute pattern analysis.

Fanned out by workers.scheduler.dispatch_active_companies.
"""

import asyncio

import structlog

from db.session import build_engine, session_factory
from workers.celery_app import celery_app
from workers.disputes import build_lifecycle

logger = structlog.get_logger()


@celery_app.task(
    name="workers.fraud.analyze_company_fraud",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def analyze_company_fraud(self, company_id: str):
    from core.config import get_settings
    from disputes.fraud import analyze_company

    async def _analyze():
        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                assessment = await analyze_company(db, company_id, build_lifecycle(db))
        finally:
            await engine.dispose()
        return {
            "status": "success",
            "company_id": assessment.company_id,
            "score": assessment.score,
            "flagged": assessment.flagged,
            "disputes": assessment.dispute_count,
            "escalated": assessment.escalated,
            "signals": assessment.signals,
        }

    try:
        return asyncio.run(_analyze())
    except Exception as exc:
        logger.error("fraud.analysis_failed", company_id=company_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
