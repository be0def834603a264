"""
Carrier Webhooks Router — weight scans and dispute decisions from couriers.

Payloads are normalized by the per-carrier adapter before reaching the
detector or the lifecycle. Deliveries are verified against the carrier's
HMAC secret when one is configured.
"""

import hashlib
import hmac
import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from api.deps import get_webhook_detector, get_webhook_lifecycle
from core.config import get_settings
from core.exceptions import (
    DisputeNotFound,
    InvalidMeasurement,
    InvalidTransition,
    ShipmentBusy,
    ShipmentNotFound,
)
from disputes.lifecycle import DisputeLifecycleManager
from integrations import get_adapter
from weights.detector import WeightDiscrepancyDetector

router = APIRouter(prefix="/api/v1/webhooks/carriers", tags=["webhooks"])
logger = structlog.get_logger()


async def _verified_payload(request: Request, carrier: str) -> dict:
    body = await request.body()
    secret = get_settings().carrier_webhook_secrets.get(carrier.lower())
    if secret:
        signature = request.headers.get("x-scalecheck-signature", "")
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(signature, expected):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return payload


@router.post("/{carrier}/weight")
async def carrier_weight(
    carrier: str,
    request: Request,
    detector: WeightDiscrepancyDetector = Depends(get_webhook_detector),
):
    """Ingest a carrier weight scan."""
    payload = await _verified_payload(request, carrier)
    try:
        reading = get_adapter(carrier, {"carrier": carrier.lower()}).parse_weight_event(payload)
        result = await detector.process(reading)
    except InvalidMeasurement as exc:
        logger.warning("webhook.invalid_measurement", carrier=carrier, error=str(exc))
        raise HTTPException(status_code=422, detail=str(exc))
    except ShipmentNotFound as exc:
        logger.warning("webhook.unknown_shipment", carrier=carrier, error=str(exc))
        raise HTTPException(status_code=404, detail=str(exc))
    except ShipmentBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    return {
        "status": "received",
        "outcome": result.outcome,
        "tracking_id": result.tracking_id,
        "percentage": result.percentage,
        "threshold_pct": result.threshold_pct,
        "dispute_code": result.dispute.dispute_code if result.dispute else None,
    }


@router.post("/{carrier}/dispute-response")
async def carrier_dispute_response(
    carrier: str,
    request: Request,
    lifecycle: DisputeLifecycleManager = Depends(get_webhook_lifecycle),
):
    """Carrier decision on a submitted dispute, correlated by reference number."""
    payload = await _verified_payload(request, carrier)
    try:
        response = get_adapter(carrier).parse_dispute_response(payload)
        dispute = await lifecycle.record_carrier_response(
            response.reference,
            response.outcome,
            adjusted_weight_kg=response.adjusted_weight_kg,
            notes=response.notes,
            actor=f"carrier:{carrier.lower()}",
        )
    except DisputeNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (InvalidTransition, ShipmentBusy) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    return {"status": "received", "dispute_code": dispute.dispute_code, "dispute_status": dispute.status}
