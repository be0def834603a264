import asyncio
import uuid
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from workers.scheduler import dispatch_active_companies


def test_dispatch_active_companies_fans_out_only_active_and_trial(tmp_path, monkeypatch):
    from db.models import Company

    db_path = tmp_path / "dispatch.db"
    db_url = f"sqlite+aiosqlite:///{db_path}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    Company(
                        company_id=uuid.UUID("00000000-0000-0000-0000-000000000101"),
                        name="Active Seller",
                        email="active@example.com",
                        status="active",
                    ),
                    Company(
                        company_id=uuid.UUID("00000000-0000-0000-0000-000000000102"),
                        name="Trial Seller",
                        email="trial@example.com",
                        status="trial",
                    ),
                    Company(
                        company_id=uuid.UUID("00000000-0000-0000-0000-000000000103"),
                        name="Suspended Seller",
                        email="suspended@example.com",
                        status="suspended",
                    ),
                ]
            )
            await db.commit()

    asyncio.run(_seed())

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    dispatched_calls: list[tuple[str, dict, int]] = []

    def _capture_send_task(task_name: str, kwargs: dict, countdown: int = 0):
        dispatched_calls.append((task_name, kwargs, countdown))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)

    result = dispatch_active_companies.run(task_name="workers.fraud.analyze_company_fraud", stagger_seconds=20)
    assert result["status"] == "success"
    assert result["company_count"] == 2
    assert result["dispatched_count"] == 2

    task_names = {task for task, _, _ in dispatched_calls}
    assert task_names == {"workers.fraud.analyze_company_fraud"}
    company_ids = {kwargs["company_id"] for _, kwargs, _ in dispatched_calls}
    assert company_ids == {
        "00000000-0000-0000-0000-000000000101",
        "00000000-0000-0000-0000-000000000102",
    }
    assert sorted(countdown for _, _, countdown in dispatched_calls) == [0, 20]

    asyncio.run(engine.dispose())


def test_dispatch_rejects_foreign_task_names():
    result = dispatch_active_companies.run(task_name="os.system")
    assert result == {"status": "failed", "reason": "invalid_task_name", "task_name": "os.system"}


def test_dispatch_can_skip_companies_without_recent_shipments(tmp_path, monkeypatch):
    from db.models import Company
    from weights import records

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'recent.db'}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    shipping_id = "00000000-0000-0000-0000-000000000201"
    idle_id = "00000000-0000-0000-0000-000000000202"

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    Company(company_id=uuid.UUID(shipping_id), name="Busy Seller", email="busy@example.com"),
                    Company(company_id=uuid.UUID(idle_id), name="Idle Seller", email="idle@example.com"),
                ]
            )
            await db.commit()
            await records.register_shipment(
                db,
                shipping_id,
                tracking_id="VEL-RECENT-1",
                carrier="velocity",
                origin_pincode="560001",
                destination_pincode="560103",
                declared_weight=0.5,
            )

    asyncio.run(_seed())
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))
    sent: list[dict] = []
    monkeypatch.setattr(
        "workers.scheduler.celery_app.send_task",
        lambda task_name, kwargs, countdown=0: sent.append(kwargs),
    )

    result = dispatch_active_companies.run(
        task_name="workers.skus.backfill_sku_baselines",
        task_kwargs={"limit": 200},
        shipped_within_days=7,
    )

    assert result["company_count"] == 1
    assert sent == [{"limit": 200, "company_id": shipping_id}]

    asyncio.run(engine.dispose())
