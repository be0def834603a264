"""
API Tests — health check and shipment registration / history.
"""

import pytest
from httpx import AsyncClient

from tests.conftest import OTHER_COMPANY_ID

SHIPMENT = {
    "tracking_id": "VEL-S1",
    "carrier": "Velocity",
    "origin_pincode": "560001",
    "destination_pincode": "110001",
    "declared_weight": 750,
    "weight_unit": "g",
    "length": 20,
    "width": 15,
    "height": 10,
    "payment_mode": "cod",
    "order_value": 1499.0,
    "sku": "TEA-250",
}


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"


@pytest.mark.asyncio
class TestShipmentsAPI:
    async def test_list_shipments_empty(self, client: AsyncClient, company):
        response = await client.get("/api/v1/shipments/")
        assert response.status_code == 200
        assert response.json() == []

    async def test_register_shipment(self, client: AsyncClient, company):
        response = await client.post("/api/v1/shipments/", json=SHIPMENT)
        assert response.status_code == 201
        data = response.json()
        assert data["tracking_id"] == "VEL-S1"
        assert data["carrier"] == "velocity"
        assert data["declared_weight_kg"] == 0.75
        assert data["declared_length_cm"] == 20
        assert data["weight_status"] == "unverified"
        assert data["billing_weight_kg"] is None

    async def test_duplicate_tracking_id(self, client: AsyncClient, company):
        await client.post("/api/v1/shipments/", json=SHIPMENT)
        response = await client.post("/api/v1/shipments/", json=SHIPMENT)
        assert response.status_code == 422

    async def test_invalid_pincode(self, client: AsyncClient, company):
        response = await client.post("/api/v1/shipments/", json={**SHIPMENT, "origin_pincode": "5600"})
        assert response.status_code == 422

    async def test_zero_weight(self, client: AsyncClient, company):
        response = await client.post("/api/v1/shipments/", json={**SHIPMENT, "declared_weight": 0})
        assert response.status_code == 422

    async def test_detail_includes_declared_observation(self, client: AsyncClient, company):
        await client.post("/api/v1/shipments/", json=SHIPMENT)

        response = await client.get("/api/v1/shipments/VEL-S1")

        assert response.status_code == 200
        observations = response.json()["observations"]
        assert [o["stage"] for o in observations] == ["declared"]
        assert observations[0]["value_kg"] == 0.75

    async def test_other_company_shipment_is_hidden(self, client: AsyncClient, make_shipment, other_company):
        await make_shipment("OTHER-1", company_id=OTHER_COMPANY_ID)
        response = await client.get("/api/v1/shipments/OTHER-1")
        assert response.status_code == 404

    async def test_status_update_and_unverified_queue(self, client: AsyncClient, company):
        await client.post("/api/v1/shipments/", json=SHIPMENT)

        response = await client.post("/api/v1/shipments/VEL-S1/status", json={"status": "in_transit"})
        assert response.status_code == 200
        assert response.json()["status"] == "in_transit"

        response = await client.get("/api/v1/shipments/unverified?older_than_minutes=0")
        assert [s["tracking_id"] for s in response.json()] == ["VEL-S1"]

    async def test_unknown_status(self, client: AsyncClient, company):
        await client.post("/api/v1/shipments/", json=SHIPMENT)
        response = await client.post("/api/v1/shipments/VEL-S1/status", json={"status": "lost"})
        assert response.status_code == 422

    async def test_filter_by_weight_status(self, client: AsyncClient, company):
        await client.post("/api/v1/shipments/", json=SHIPMENT)
        response = await client.get("/api/v1/shipments/?weight_status=verified")
        assert response.json() == []
