"""
API Integration Tests — dispute listing, seller actions, admin review and metrics.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient

from weights.readings import ReportedWeight

from tests.conftest import OTHER_COMPANY_ID

STRONG_ARTIFACT = {
    "url": "https://cdn.example/evidence/scale.jpg",
    "has_scale": True,
    "has_ruler": True,
    "has_awb": True,
    "width_px": 1920,
    "height_px": 1080,
    "size_bytes": 640000,
}


@pytest.fixture
def seeded_dispute(detector, make_shipment):
    async def _seed(tracking_id="VEL-API1", company_id=None, declared=0.5, reported=0.8):
        kwargs = {"company_id": company_id} if company_id else {}
        await make_shipment(tracking_id, declared_weight=declared, **kwargs)
        result = await detector.process(ReportedWeight(tracking_id, reported, scanned_at=datetime.utcnow()))
        return result.dispute

    return _seed


@pytest.mark.asyncio
class TestDisputeQueries:
    async def test_list_disputes_empty(self, client: AsyncClient, company):
        response = await client.get("/api/v1/disputes/")
        assert response.status_code == 200
        assert response.json() == []

    async def test_list_and_filter(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()

        response = await client.get("/api/v1/disputes/")
        data = response.json()
        assert [d["dispute_code"] for d in data] == [dispute.dispute_code]
        assert data[0]["status"] == "pending"
        assert data[0]["cost_difference"] == 30.0

        response = await client.get("/api/v1/disputes/?status=accepted")
        assert response.json() == []
        response = await client.get("/api/v1/disputes/?open_only=true")
        assert len(response.json()) == 1

    async def test_detail_by_code(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()

        response = await client.get(f"/api/v1/disputes/{dispute.dispute_code}")

        assert response.status_code == 200
        data = response.json()
        assert data["tracking_id"] == "VEL-API1"
        assert data["evidence"] == []
        assert [e["action"] for e in data["timeline"]] == ["Dispute created"]

    async def test_detail_not_found(self, client: AsyncClient, company):
        response = await client.get("/api/v1/disputes/WD-20261019-XXXXX")
        assert response.status_code == 404

    async def test_other_company_dispute_is_hidden(self, client: AsyncClient, seeded_dispute, other_company):
        dispute = await seeded_dispute("OTHER-D1", company_id=OTHER_COMPANY_ID)

        response = await client.get(f"/api/v1/disputes/{dispute.dispute_id}")
        assert response.status_code == 404
        response = await client.post(f"/api/v1/disputes/{dispute.dispute_id}/accept")
        assert response.status_code == 404

    async def test_metrics(self, client: AsyncClient, seeded_dispute):
        await seeded_dispute()

        response = await client.get("/api/v1/disputes/metrics")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["open"] == 1
        assert data["by_status"] == {"pending": 1}
        assert data["by_category"] == {"manual_error": 1}
        assert data["open_exposure"] == 30.0
        assert data["fallback_pricing_rate"] == 0.0


@pytest.mark.asyncio
class TestSellerActions:
    async def test_accept(self, client: AsyncClient, seeded_dispute, ledger):
        dispute = await seeded_dispute()

        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/accept")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["resolved_by"] == "seller-user-1"
        assert data["debit_amount"] == 30.0
        assert len(ledger.calls) == 1

    async def test_accept_twice_conflicts(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()
        await client.post(f"/api/v1/disputes/{dispute.dispute_code}/accept")

        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/accept")
        assert response.status_code == 409

    async def test_reject_with_evidence(self, client: AsyncClient, seeded_dispute, enqueued):
        dispute = await seeded_dispute()
        artifact = {**STRONG_ARTIFACT, "captured_at": datetime.utcnow().isoformat()}

        response = await client.post(
            f"/api/v1/disputes/{dispute.dispute_code}/reject",
            json={"artifacts": [artifact], "notes": "Packed at 500 g"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "evidence_submitted"
        assert data["routed_to"] == "carrier_submission"
        assert data["validations"][0]["is_valid"] is True
        assert enqueued == [str(dispute.dispute_id)]

        detail = (await client.get(f"/api/v1/disputes/{dispute.dispute_code}")).json()
        assert len(detail["evidence"]) == 1
        assert detail["evidence"][0]["quality_score"] == 100.0

    async def test_reject_requires_artifacts(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()
        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/reject", json={"artifacts": []})
        assert response.status_code == 422

    async def test_weak_evidence_gets_suggestions(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()

        response = await client.post(
            f"/api/v1/disputes/{dispute.dispute_code}/evidence",
            json={"artifacts": [{"url": "https://cdn.example/evidence/blurry.jpg", "width_px": 320, "height_px": 240}]},
        )

        assert response.status_code == 200
        validation = response.json()["validations"][0]
        assert validation["is_valid"] is False
        assert any("weighing scale" in s for s in validation["suggestions"])

    async def test_evidence_on_closed_dispute_conflicts(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()
        await client.post(f"/api/v1/disputes/{dispute.dispute_code}/accept")

        response = await client.post(
            f"/api/v1/disputes/{dispute.dispute_code}/evidence", json={"artifacts": [STRONG_ARTIFACT]}
        )
        assert response.status_code == 409

    async def test_withdraw(self, client: AsyncClient, seeded_dispute, ledger):
        dispute = await seeded_dispute()

        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/withdraw")

        assert response.status_code == 200
        assert response.json()["status"] == "withdrawn"
        assert response.json()["final_weight_kg"] == 0.5
        assert ledger.calls == []


@pytest.mark.asyncio
class TestAdminReview:
    async def test_seller_cannot_review(self, client: AsyncClient, seeded_dispute):
        dispute = await seeded_dispute()
        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/review", json={"decision": "approve"})
        assert response.status_code == 403

    async def test_admin_escalates_then_approves(self, client: AsyncClient, seeded_dispute, mock_user):
        mock_user["roles"] = ["admin"]
        dispute = await seeded_dispute()

        response = await client.post(
            f"/api/v1/disputes/{dispute.dispute_code}/review",
            json={"decision": "escalate", "notes": "Seller called support"},
        )
        assert response.json()["status"] == "escalated"

        response = await client.post(
            f"/api/v1/disputes/{dispute.dispute_code}/review",
            json={"decision": "approve", "notes": "Scale photo checks out"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "resolved_in_favor"
        assert response.json()["resolved_by"] == "seller-user-1"

    async def test_partial_needs_weight(self, client: AsyncClient, seeded_dispute, mock_user):
        mock_user["roles"] = ["admin"]
        dispute = await seeded_dispute()

        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/review", json={"decision": "partial"})
        assert response.status_code == 422

    async def test_partial_reprices(self, client: AsyncClient, seeded_dispute, mock_user):
        mock_user["roles"] = ["admin"]
        dispute = await seeded_dispute()
        await client.post(f"/api/v1/disputes/{dispute.dispute_code}/review", json={"decision": "escalate"})

        response = await client.post(
            f"/api/v1/disputes/{dispute.dispute_code}/review",
            json={"decision": "partial", "adjusted_weight_kg": 0.6},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "partial_resolution"
        assert data["final_cost"] == 60.0
        assert data["debit_amount"] == 10.0

    async def test_pending_cannot_be_approved(self, client: AsyncClient, seeded_dispute, mock_user):
        mock_user["roles"] = ["admin"]
        dispute = await seeded_dispute()
        response = await client.post(f"/api/v1/disputes/{dispute.dispute_code}/review", json={"decision": "approve"})
        assert response.status_code == 409
