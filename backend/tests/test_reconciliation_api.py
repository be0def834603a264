"""
API Integration Tests — carrier invoice uploads and reconciliation reports.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient

from core.config import get_settings

INVOICE = b"""AWB,Charged Weight,Billed Amount
VEL-I1,0.8,120
VEL-I2,1.0,90
"""


@pytest.fixture(autouse=True)
def report_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(get_settings(), "reconciliation_report_dir", str(tmp_path / "reports"))
    return tmp_path / "reports"


@pytest.fixture
def as_admin(mock_user):
    mock_user["roles"] = ["admin"]
    return mock_user


async def _upload(client, month=None, content=INVOICE):
    return await client.post(
        "/api/v1/reconciliation/runs",
        data={"carrier": "velocity", "billing_month": month or datetime.utcnow().strftime("%Y-%m")},
        files={"file": ("velocity_mis.csv", content, "text/csv")},
    )


@pytest.mark.asyncio
class TestReconciliationAPI:
    async def test_seller_cannot_upload(self, client: AsyncClient, company):
        response = await _upload(client)
        assert response.status_code == 403

    async def test_upload_reconciles(self, client: AsyncClient, as_admin, make_shipment):
        await make_shipment("VEL-I1", declared_weight=0.5)
        await make_shipment("VEL-I2", declared_weight=1.0)

        response = await _upload(client)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "completed"
        assert data["version"] == 1
        assert data["source_filename"] == "velocity_mis.csv"
        assert data["total_rows"] == 2
        assert data["discrepant"] == 1
        assert data["disputes_created"] == 1

        disputes = (await client.get("/api/v1/disputes/?category=invoice_discrepancy")).json()
        assert len(disputes) == 1
        assert disputes[0]["source"] == "courier_invoice"

    async def test_runs_are_listed_and_downloadable(self, client: AsyncClient, as_admin, make_shipment):
        await make_shipment("VEL-I1", declared_weight=0.5)
        run_id = (await _upload(client)).json()["run_id"]
        await _upload(client)

        runs = (await client.get("/api/v1/reconciliation/runs?carrier=velocity")).json()
        assert sorted(r["version"] for r in runs) == [1, 2]

        response = await client.get(f"/api/v1/reconciliation/runs/{run_id}")
        assert response.json()["version"] == 1

        response = await client.get(f"/api/v1/reconciliation/runs/{run_id}/report")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[0].startswith("line_no,awb,status")

    async def test_bad_month(self, client: AsyncClient, as_admin, company):
        response = await _upload(client, month="2026-13")
        assert response.status_code == 422

    async def test_missing_columns(self, client: AsyncClient, as_admin, company):
        response = await _upload(client, content=b"Tracking,Amount\nVEL-I1,10\n")
        assert response.status_code == 422

    async def test_unknown_run(self, client: AsyncClient, as_admin):
        response = await client.get("/api/v1/reconciliation/runs/00000000-0000-0000-0000-000000000099")
        assert response.status_code == 404
