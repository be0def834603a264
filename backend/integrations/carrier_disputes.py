"""
Carrier Dispute Submission

Hands a seller's weight claim to the carrier's dispute desk. Carriers with a
dispute API get a JSON submission and reply with a ticket number; the rest
only take email, so the claim is mailed with a locally generated reference
that the carrier quotes back in its reply.

Submission is fire-and-forget from the caller's point of view: it runs in a
Celery task, and the carrier's decision arrives later on the
dispute-response webhook, correlated by reference number.
"""

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import httpx
import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from core.config import get_settings
from core.exceptions import CarrierSubmissionFailed

logger = structlog.get_logger()


@dataclass(frozen=True)
class SubmissionReceipt:
    method: str  # api | email
    reference_number: str


class CarrierDisputeSubmitter(ABC):
    @abstractmethod
    async def submit(
        self,
        carrier: str,
        tracking_id: str,
        declared_weight_kg: float,
        evidence_urls: list[str],
        notes: str | None = None,
    ) -> SubmissionReceipt:
        """Submit a claim. Raises CarrierSubmissionFailed on network/API failure."""
        ...


class HttpCarrierDisputeSubmitter(CarrierDisputeSubmitter):
    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.base_url = (base_url or settings.carrier_dispute_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.carrier_timeout_seconds
        self.api_carriers = {c.lower() for c in settings.carrier_api_dispute_intake}
        self.email_intake = {k.lower(): v for k, v in settings.carrier_dispute_emails.items()}

    async def submit(
        self,
        carrier: str,
        tracking_id: str,
        declared_weight_kg: float,
        evidence_urls: list[str],
        notes: str | None = None,
    ) -> SubmissionReceipt:
        carrier_key = (carrier or "").lower()
        if carrier_key in self.api_carriers:
            return await self._submit_api(carrier_key, tracking_id, declared_weight_kg, evidence_urls, notes)
        return self._submit_email(carrier_key, tracking_id, declared_weight_kg, evidence_urls, notes)

    async def _submit_api(self, carrier, tracking_id, declared_weight_kg, evidence_urls, notes) -> SubmissionReceipt:
        payload = {
            "awb": tracking_id,
            "declared_weight_kg": declared_weight_kg,
            "evidence_urls": evidence_urls,
            "remarks": notes or "",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/carriers/{carrier}/weight-disputes", json=payload)
                resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CarrierSubmissionFailed(f"{carrier} dispute API failed for {tracking_id}: {exc}") from exc

        reference = body.get("ticket_id") or body.get("reference_number")
        if not reference:
            raise CarrierSubmissionFailed(f"{carrier} dispute API returned no ticket for {tracking_id}")
        logger.info("carrier_disputes.submitted", carrier=carrier, tracking_id=tracking_id, method="api")
        return SubmissionReceipt(method="api", reference_number=str(reference))

    def _submit_email(self, carrier, tracking_id, declared_weight_kg, evidence_urls, notes) -> SubmissionReceipt:
        settings = get_settings()
        to_email = self.email_intake.get(carrier)
        if not to_email or not settings.sendgrid_api_key:
            raise CarrierSubmissionFailed(f"No dispute intake configured for carrier '{carrier}'")

        reference = f"SCWD-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"
        links = "".join(f'<li><a href="{url}">{url}</a></li>' for url in evidence_urls)
        html = (
            f"<p>Reference: <strong>{reference}</strong></p>"
            f"<p>AWB {tracking_id}: seller declared {declared_weight_kg} kg and disputes the applied weight.</p>"
            f"<p>{notes or ''}</p><ul>{links}</ul>"
            "<p>Please quote the reference in your reply.</p>"
        )
        try:
            sg = sendgrid.SendGridAPIClient(api_key=settings.sendgrid_api_key)
            response = sg.send(
                Mail(
                    from_email=settings.notification_from_email,
                    to_emails=to_email,
                    subject=f"Weight dispute {reference} / AWB {tracking_id}",
                    html_content=html,
                )
            )
        except Exception as exc:  # noqa: BLE001
            raise CarrierSubmissionFailed(f"Email intake to {carrier} failed: {exc}") from exc
        if response.status_code not in (200, 201, 202):
            raise CarrierSubmissionFailed(f"Email intake to {carrier} returned HTTP {response.status_code}")

        logger.info("carrier_disputes.submitted", carrier=carrier, tracking_id=tracking_id, method="email")
        return SubmissionReceipt(method="email", reference_number=reference)
