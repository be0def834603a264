"""
Worker tests — task registration, billing-month selection, MIS inbox paths
and the dispute and fraud tasks run end to end against a SQLite file.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings
from db.models import Company, WeightDispute
from db.session import Base
from disputes.lifecycle import DisputeLifecycleManager
from pricing.quoter import PricingService
from pricing.zones import ZoneResolver
from weights import records
from weights.detector import WeightDiscrepancyDetector
from weights.readings import ReportedWeight
from workers import disputes as dispute_workers
from workers import fraud as fraud_workers
from workers.celery_app import celery_app
from workers.reconciliation import invoice_path, previous_billing_month

from tests.conftest import COMPANY_ID, FakeLedger, FakeNotifier, FakeQuoter


class TestPreviousBillingMonth:
    @pytest.mark.parametrize(
        "now,expected",
        [
            (datetime(2026, 10, 1, tzinfo=timezone.utc), "2026-09"),
            (datetime(2026, 1, 15, tzinfo=timezone.utc), "2025-12"),
            (datetime(2026, 12, 31, tzinfo=timezone.utc), "2026-11"),
        ],
    )
    def test_rolls_back_one_month(self, now, expected):
        assert previous_billing_month(now) == expected


class TestInvoicePath:
    def test_layout(self):
        path = invoice_path("velocity", "2026-09")
        assert path == Path(get_settings().reconciliation_inbox_dir) / "velocity" / "2026-09.csv"


class TestTaskRegistry:
    @pytest.mark.parametrize(
        "name",
        [
            "workers.disputes.auto_resolve_disputes",
            "workers.disputes.submit_to_carrier",
            "workers.disputes.retry_settlements",
            "workers.disputes.scan_unverified_shipments",
            "workers.fraud.analyze_company_fraud",
            "workers.skus.backfill_sku_baselines",
            "workers.scheduler.dispatch_active_companies",
        ],
    )
    def test_task_is_registered(self, name):
        import workers.scheduler  # noqa: F401
        import workers.skus  # noqa: F401

        assert name in celery_app.tasks


@pytest.fixture
def worker_db(tmp_path, monkeypatch):
    """A SQLite file with one company and one overdue pending dispute, wired into the workers."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'workers.db'}"
    engine = create_async_engine(db_url, echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    ledger, notifier = FakeLedger(), FakeNotifier()

    def _lifecycle(db):
        return DisputeLifecycleManager(
            db,
            notifier=notifier,
            settlement_executor=ledger,
            pricing=PricingService(FakeQuoter(), ZoneResolver(ttl_seconds=60)),
        )

    async def _seed():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with factory() as db:
            db.add(Company(company_id=uuid.UUID(COMPANY_ID), name="Chai Point Retail", email="ops@example"))
            await db.commit()
            await records.register_shipment(
                db,
                COMPANY_ID,
                tracking_id="VEL-WORKER-1",
                carrier="velocity",
                origin_pincode="560001",
                destination_pincode="560103",
                declared_weight=0.5,
            )
            lifecycle = _lifecycle(db)
            detector = WeightDiscrepancyDetector(db, pricing=lifecycle.pricing, lifecycle=lifecycle, notifier=notifier)
            result = await detector.process(ReportedWeight("VEL-WORKER-1", 0.8, scanned_at=datetime.utcnow()))
            await db.execute(
                update(WeightDispute)
                .where(WeightDispute.dispute_id == result.dispute.dispute_id)
                .values(auto_resolve_at=datetime.utcnow() - timedelta(hours=1))
            )
            await db.commit()

    asyncio.run(_seed())
    asyncio.run(engine.dispose())

    worker_settings = get_settings().model_copy(update={"database_url": db_url})
    monkeypatch.setattr(dispute_workers, "settings", worker_settings)
    monkeypatch.setattr(dispute_workers, "build_lifecycle", _lifecycle)
    monkeypatch.setattr(fraud_workers, "build_lifecycle", _lifecycle)
    monkeypatch.setattr("core.config.get_settings", lambda: worker_settings)
    return ledger


class TestDisputeWorkers:
    def test_auto_resolve_task_debits_overdue_dispute(self, worker_db):
        summary = dispute_workers.auto_resolve_disputes.run()

        assert summary["auto_accepted"] == 1
        assert [call[0] for call in worker_db.calls] == ["debit"]
        assert "completed_at" in summary

    def test_fraud_task_scores_company(self, worker_db):
        result = fraud_workers.analyze_company_fraud.run(COMPANY_ID)

        assert result["status"] == "success"
        assert result["company_id"] == COMPANY_ID
        assert result["flagged"] is False
