"""
Tests for courier payload adapters and the adapter registry.
"""

from datetime import datetime

import pytest

from core.exceptions import CarrierSubmissionFailed, InvalidMeasurement
from integrations import CarrierCode, DelhiveryAdapter, EkartAdapter, GenericAdapter, VelocityAdapter, get_adapter
from integrations.base import parse_timestamp
from integrations.carrier_disputes import HttpCarrierDisputeSubmitter


class TestRegistry:
    @pytest.mark.parametrize(
        "carrier,adapter_cls",
        [
            ("velocity", VelocityAdapter),
            ("Delhivery", DelhiveryAdapter),
            ("ekart", EkartAdapter),
            ("shadowfax", GenericAdapter),
        ],
    )
    def test_lookup(self, carrier, adapter_cls):
        assert isinstance(get_adapter(carrier), adapter_cls)

    def test_adapter_knows_its_carrier(self):
        assert get_adapter("velocity").carrier is CarrierCode.VELOCITY


class TestParseTimestamp:
    def test_iso_with_zulu(self):
        assert parse_timestamp("2026-10-12T09:30:00Z") == datetime(2026, 10, 12, 9, 30)

    def test_offset_is_normalized_to_utc(self):
        assert parse_timestamp("2026-10-12T15:00:00+05:30") == datetime(2026, 10, 12, 9, 30)

    def test_epoch_milliseconds(self):
        assert parse_timestamp(1791797400000) == parse_timestamp(1791797400)

    def test_missing(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_garbage(self):
        with pytest.raises(InvalidMeasurement):
            parse_timestamp("yesterday-ish")


class TestVelocityAdapter:
    PAYLOAD = {
        "webhook_id": "wh-881",
        "shipment_data": {"awb": "VEL100001"},
        "weight_data": {
            "scanned_weight": 820,
            "unit": "g",
            "dimensions": {"length": 20, "width": 15, "height": 10},
            "scan_timestamp": "2026-10-12T09:30:00Z",
            "scan_location": "BLR Hub",
        },
    }

    def test_weight_event(self):
        reading = VelocityAdapter().parse_weight_event(self.PAYLOAD)

        assert reading.tracking_id == "VEL100001"
        assert reading.weight_kg == 0.82
        assert (reading.dimensions.length, reading.dimensions.width, reading.dimensions.height) == (20, 15, 10)
        assert reading.scanned_at == datetime(2026, 10, 12, 9, 30)
        assert reading.location == "BLR Hub"
        assert reading.carrier == "velocity"
        assert reading.external_ref == "wh-881"

    def test_missing_awb(self):
        with pytest.raises(InvalidMeasurement, match="shipment_data"):
            VelocityAdapter().parse_weight_event({"weight_data": {"scanned_weight": 1}})

    def test_dispute_response_maps_status(self):
        response = VelocityAdapter().parse_dispute_response(
            {"dispute_data": {"ticket_id": "VEL-TKT-1001", "status": "PARTIALLY_APPROVED", "final_weight": 0.6}}
        )
        assert response.reference == "VEL-TKT-1001"
        assert response.outcome == "partial"
        assert response.adjusted_weight_kg == 0.6


class TestDelhiveryAdapter:
    def test_weight_is_in_grams(self):
        reading = DelhiveryAdapter().parse_weight_event(
            {
                "Shipment": {
                    "Waybill": 1234567890123,
                    "ChargedWeight": 1500,
                    "ScanType": "Manifest",
                    "ScanDateTime": "2026-10-12T10:00:00",
                    "Length": 30,
                    "Breadth": 20,
                    "Height": 10,
                }
            }
        )
        assert reading.tracking_id == "1234567890123"
        assert reading.weight_kg == 1.5
        assert reading.stage == "applied"
        assert reading.dimensions.width == 20

    def test_generic_dispute_response(self):
        response = DelhiveryAdapter().parse_dispute_response(
            {"reference": "DLV-77", "outcome": "Rejected", "notes": "Scan image verified"}
        )
        assert response.outcome == "rejected"
        assert response.adjusted_weight_kg is None


class TestEkartAdapter:
    def test_string_weights_and_breadth(self):
        reading = EkartAdapter().parse_weight_event(
            {
                "vendor_tracking_id": "FMPC0001",
                "event": "hub_scan",
                "event_date": 1791797400,
                "shipment_details": {"weight": "2.4", "length": "40", "breadth": "40", "height": "30"},
            }
        )
        assert reading.weight_kg == 2.4
        assert reading.stage == "scanned"
        assert reading.dimensions.width == 40.0
        assert reading.scanned_at is not None

    def test_missing_weight(self):
        with pytest.raises(InvalidMeasurement):
            EkartAdapter().parse_weight_event({"vendor_tracking_id": "FMPC0001", "shipment_details": {}})


class TestGenericAdapter:
    def test_canonical_shape(self):
        reading = get_adapter("xpressbees").parse_weight_event(
            {"tracking_id": "XB-1", "weight": 3, "weight_unit": "lb", "stage": "pickup", "carrier": "xpressbees"}
        )
        assert reading.weight_kg == pytest.approx(1.3608, abs=1e-4)
        assert reading.stage == "packed"
        assert reading.carrier == "xpressbees"
        assert reading.dimensions is None

    def test_non_positive_weight_rejected(self):
        with pytest.raises(InvalidMeasurement):
            GenericAdapter().parse_weight_event({"tracking_id": "XB-1", "weight": -2})


@pytest.mark.asyncio
class TestDisputeSubmitter:
    async def test_email_carrier_without_intake_fails(self):
        submitter = HttpCarrierDisputeSubmitter(base_url="http://carrier.invalid")
        submitter.api_carriers = set()
        submitter.email_intake = {}

        with pytest.raises(CarrierSubmissionFailed):
            await submitter.submit("ekart", "FMPC0001", 0.5, ["https://cdn.example/e.jpg"])
