"""
Seller notifications for weight disputes.

NotificationSender is the fire-and-forget seam used by the detector and the
lifecycle manager. The default sender hands delivery to a Celery task so no
request ever waits on SendGrid or Redis; the task renders the email and also
publishes the event on Redis pub/sub for live dashboards.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime

import redis.asyncio as aioredis
import sendgrid
import structlog
from kombu.exceptions import OperationalError
from sendgrid.helpers.mail import Mail

from core.config import get_settings

logger = structlog.get_logger()

TEMPLATES = {
    "weight_dispute_created": "Weight discrepancy on shipment {tracking_id}",
    "weight_dispute_evidence_received": "Evidence received for dispute {dispute_code}",
    "weight_dispute_escalated": "Dispute {dispute_code} moved to manual review",
    "weight_dispute_resolved": "Dispute {dispute_code} resolved: {status}",
    "weight_fraud_flagged": "Account flagged for weight dispute review",
}


class NotificationSender(ABC):
    @abstractmethod
    async def send(self, company_id: str, template: str, params: dict) -> None:
        """Queue a notification. Must not raise on delivery problems."""
        ...


class CeleryNotificationSender(NotificationSender):
    async def send(self, company_id: str, template: str, params: dict) -> None:
        from workers.celery_app import celery_app

        try:
            celery_app.send_task(
                "workers.notifications.deliver_notification",
                kwargs={"company_id": str(company_id), "template": template, "params": params},
            )
        except OperationalError as exc:
            logger.warning("notifications.enqueue_failed", company_id=str(company_id), template=template, error=str(exc))


def render_subject(template: str, params: dict) -> str:
    pattern = TEMPLATES.get(template, template.replace("_", " ").title())
    try:
        return f"ScaleCheck: {pattern.format(**params)}"
    except KeyError:
        return f"ScaleCheck: {template.replace('_', ' ').title()}"


def render_html(template: str, params: dict) -> str:
    rows = "".join(
        f'<tr><td style="color: #64748b; padding: 4px 12px 4px 0;">{key.replace("_", " ").title()}</td>'
        f'<td style="color: #1e293b;">{value}</td></tr>'
        for key, value in params.items()
        if value is not None
    )
    return f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #0f172a; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">{render_subject(template, params)}</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <table>{rows}</table>
      </div>
    </div>
    """


async def send_dispute_email(to_email: str, template: str, params: dict) -> bool:
    """Send via SendGrid. Returns True if accepted by the API."""
    settings = get_settings()
    if not settings.sendgrid_api_key or not to_email:
        return False

    try:
        sg = sendgrid.SendGridAPIClient(api_key=settings.sendgrid_api_key)
        email = Mail(
            from_email=settings.notification_from_email,
            to_emails=to_email,
            subject=render_subject(template, params),
            html_content=render_html(template, params),
        )
        response = sg.send(email)
        return response.status_code in (200, 201, 202)
    except Exception as exc:  # noqa: BLE001
        logger.warning("notifications.email_failed", template=template, error=str(exc))
        return False


async def publish_dispute_event(company_id: str, template: str, params: dict) -> int:
    """Publish on Redis pub/sub. Returns number of subscribers notified."""
    settings = get_settings()
    redis = aioredis.from_url(settings.redis_url)
    try:
        payload = json.dumps(
            {
                "type": template,
                "company_id": str(company_id),
                "params": params,
                "published_at": datetime.utcnow().isoformat(),
            },
            default=str,
        )
        return await redis.publish(f"disputes:{company_id}", payload)
    finally:
        await redis.aclose()
