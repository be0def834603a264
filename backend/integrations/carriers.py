"""
Courier payload adapters.

Velocity   nested ``shipment_data`` / ``weight_data``, weight unit given per scan
Delhivery  flat ``Waybill`` scan, weight always in grams
Ekart      ``vendor_tracking_id`` with string weights and volumetric block
Generic    the canonical shape our own docs publish for other couriers
"""

from typing import Any

from integrations.base import (
    CarrierCode,
    CarrierDisputeResponse,
    CarrierWebhookAdapter,
    parse_dimensions,
    parse_timestamp,
    register_adapter,
    require,
)
from weights.converter import to_kilograms
from weights.readings import ReportedWeight

STAGE_ALIASES = {
    "pickup": "packed",
    "packed": "packed",
    "manifest": "applied",
    "applied": "applied",
    "hub_scan": "scanned",
    "scanned": "scanned",
    "scan": "scanned",
}


def normalize_stage(value: Any) -> str:
    return STAGE_ALIASES.get(str(value or "scanned").lower(), "scanned")


@register_adapter
class VelocityAdapter(CarrierWebhookAdapter):
    @property
    def carrier(self) -> CarrierCode:
        return CarrierCode.VELOCITY

    def parse_weight_event(self, payload: dict[str, Any]) -> ReportedWeight:
        shipment = require(payload, "shipment_data")
        weight = require(payload, "weight_data")
        return ReportedWeight(
            tracking_id=str(require(shipment, "awb")),
            weight_kg=to_kilograms(require(weight, "scanned_weight"), weight.get("unit", "kg")),
            dimensions=parse_dimensions(weight.get("dimensions")),
            scanned_at=parse_timestamp(weight.get("scan_timestamp") or payload.get("timestamp")),
            location=weight.get("scan_location"),
            stage="scanned",
            carrier=self.carrier.value,
            external_ref=payload.get("webhook_id"),
        )

    def parse_dispute_response(self, payload: dict[str, Any]) -> CarrierDisputeResponse:
        data = require(payload, "dispute_data")
        status = str(require(data, "status")).lower()
        outcome = {"approved": "accepted", "declined": "rejected", "partially_approved": "partial"}.get(
            status, status
        )
        adjusted = data.get("final_weight")
        return CarrierDisputeResponse(
            reference=str(require(data, "ticket_id")),
            outcome=outcome,
            adjusted_weight_kg=to_kilograms(adjusted, data.get("unit", "kg")) if adjusted is not None else None,
            notes=data.get("remarks"),
        )


@register_adapter
class DelhiveryAdapter(CarrierWebhookAdapter):
    @property
    def carrier(self) -> CarrierCode:
        return CarrierCode.DELHIVERY

    def parse_weight_event(self, payload: dict[str, Any]) -> ReportedWeight:
        scan = payload.get("Shipment", payload)
        dims = None
        if scan.get("Length"):
            dims = parse_dimensions(
                {"length": scan.get("Length"), "width": scan.get("Breadth"), "height": scan.get("Height")}
            )
        return ReportedWeight(
            tracking_id=str(require(scan, "Waybill")),
            weight_kg=to_kilograms(require(scan, "ChargedWeight"), "g"),
            dimensions=dims,
            scanned_at=parse_timestamp(scan.get("ScanDateTime")),
            location=scan.get("ScannedLocation"),
            stage=normalize_stage(scan.get("ScanType")),
            carrier=self.carrier.value,
            external_ref=scan.get("ReferenceNo"),
        )


@register_adapter
class EkartAdapter(CarrierWebhookAdapter):
    @property
    def carrier(self) -> CarrierCode:
        return CarrierCode.EKART

    def parse_weight_event(self, payload: dict[str, Any]) -> ReportedWeight:
        details = payload.get("shipment_details", {})
        dims = None
        if details.get("length"):
            dims = parse_dimensions(
                {
                    "length": details.get("length"),
                    "width": details.get("breadth"),
                    "height": details.get("height"),
                }
            )
        return ReportedWeight(
            tracking_id=str(require(payload, "vendor_tracking_id")),
            weight_kg=to_kilograms(require(details, "weight"), details.get("weight_unit", "kg")),
            dimensions=dims,
            scanned_at=parse_timestamp(payload.get("event_date")),
            location=payload.get("hub_name"),
            stage=normalize_stage(payload.get("event")),
            carrier=self.carrier.value,
            external_ref=payload.get("event_id"),
        )


@register_adapter
class GenericAdapter(CarrierWebhookAdapter):
    @property
    def carrier(self) -> CarrierCode:
        return CarrierCode.GENERIC

    def parse_weight_event(self, payload: dict[str, Any]) -> ReportedWeight:
        return ReportedWeight(
            tracking_id=str(require(payload, "tracking_id")),
            weight_kg=to_kilograms(require(payload, "weight"), payload.get("weight_unit", "kg")),
            dimensions=parse_dimensions(payload.get("dimensions")),
            scanned_at=parse_timestamp(payload.get("scanned_at")),
            location=payload.get("location"),
            stage=normalize_stage(payload.get("stage")),
            carrier=payload.get("carrier") or self.config.get("carrier"),
            external_ref=payload.get("event_id"),
        )
