"""
Notification Workers — seller email plus live dashboard push.
"""

import asyncio
import uuid

import structlog

from db.session import build_engine, session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.notifications.deliver_notification",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def deliver_notification(self, company_id: str, template: str, params: dict):
    from alerts.notifications import publish_dispute_event, send_dispute_email
    from core.config import get_settings
    from db.models import Company

    async def _deliver():
        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async with session_factory(engine)() as db:
                company = await db.get(Company, uuid.UUID(company_id))
        finally:
            await engine.dispose()

        emailed = False
        if company is not None and company.email:
            emailed = await send_dispute_email(company.email, template, params)
        subscribers = await publish_dispute_event(company_id, template, params)
        logger.info(
            "notifications.delivered",
            company_id=company_id,
            template=template,
            emailed=emailed,
            subscribers=subscribers,
        )
        return {"status": "success", "emailed": emailed, "subscribers": subscribers}

    try:
        return asyncio.run(_deliver())
    except Exception as exc:
        logger.error("notifications.delivery_failed", company_id=company_id, template=template, error=str(exc))
        raise self.retry(exc=exc)
