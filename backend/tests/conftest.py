"""
Test Configuration — Fixtures for async DB, test client, fakes and seed data.

Each test gets its own SQLite file so app code can commit, roll back and open
second sessions (race tests) exactly as it does against PostgreSQL.
External collaborators are replaced with recording fakes.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alerts.notifications import NotificationSender
from api.deps import (
    get_current_user,
    get_db,
    get_enqueue_submission,
    get_notifier,
    get_quoter,
    get_settlement_executor,
)
from api.main import app
from core.exceptions import CarrierSubmissionFailed, LedgerUnavailable, PricingUnavailable, SettlementAlreadyApplied
from db.models import Company
from db.session import Base
from disputes.lifecycle import DisputeLifecycleManager
from disputes.settlement import SettlementExecutor
from integrations.carrier_disputes import CarrierDisputeSubmitter, SubmissionReceipt
from pricing.quoter import PricingQuoter, PricingService, Quote
from pricing.zones import ZoneResolver
from weights import records
from weights.detector import WeightDiscrepancyDetector

COMPANY_ID = "00000000-0000-0000-0000-000000000001"
OTHER_COMPANY_ID = "00000000-0000-0000-0000-000000000002"

# Flat test rate card: ₹100 per chargeable kg
RATE_PER_KG = 100.0


# ─── Fakes ──────────────────────────────────────────────────────────────────


class FakeQuoter(PricingQuoter):
    def __init__(self):
        self.calls: list[dict] = []
        self.fail = False

    async def quote(self, origin, destination, weight_kg, dimensions, payment_mode, order_value=0.0, carrier=None):
        self.calls.append(
            {
                "origin": origin,
                "destination": destination,
                "weight_kg": weight_kg,
                "payment_mode": payment_mode,
                "order_value": order_value,
                "carrier": carrier,
            }
        )
        if self.fail:
            raise PricingUnavailable("pricing engine timed out")
        return Quote(total=round(weight_kg * RATE_PER_KG, 2), ratecard_version="rc-test-7", zone="A")


class FakeLedger(SettlementExecutor):
    def __init__(self):
        self.calls: list[tuple[str, str, float, str]] = []
        self.fail = False
        self.already_applied = False

    async def credit(self, company_id, amount, idempotency_key, reason):
        return self._record("credit", company_id, amount, idempotency_key)

    async def debit(self, company_id, amount, idempotency_key, reason):
        return self._record("debit", company_id, amount, idempotency_key)

    def _record(self, direction, company_id, amount, idempotency_key):
        if self.fail:
            raise LedgerUnavailable("ledger returned HTTP 503")
        if self.already_applied:
            raise SettlementAlreadyApplied(idempotency_key)
        self.calls.append((direction, company_id, amount, idempotency_key))
        return f"txn-{len(self.calls)}"


class FakeNotifier(NotificationSender):
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, company_id, template, params):
        self.sent.append((company_id, template, params))

    @property
    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]


class FakeSubmitter(CarrierDisputeSubmitter):
    def __init__(self, reference: str = "VEL-TKT-1001"):
        self.reference = reference
        self.calls: list[dict] = []
        self.fail = False

    async def submit(self, carrier, tracking_id, declared_weight_kg, evidence_urls, notes=None):
        self.calls.append({"carrier": carrier, "tracking_id": tracking_id, "evidence_urls": evidence_urls})
        if self.fail:
            raise CarrierSubmissionFailed(f"{carrier} dispute API unreachable")
        return SubmissionReceipt(method="api", reference_number=self.reference)


# ─── Database ───────────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scalecheck.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


# ─── Collaborators ──────────────────────────────────────────────────────────


@pytest.fixture
def quoter():
    return FakeQuoter()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def enqueued():
    """Dispute IDs handed to the carrier-submission queue."""
    return []


@pytest.fixture
def pricing(quoter):
    return PricingService(quoter, ZoneResolver(ttl_seconds=60))


@pytest.fixture
def make_lifecycle(pricing, ledger, notifier, enqueued):
    def _make(db):
        return DisputeLifecycleManager(
            db,
            notifier=notifier,
            settlement_executor=ledger,
            pricing=pricing,
            enqueue_submission=enqueued.append,
        )

    return _make


@pytest.fixture
def lifecycle(test_db, make_lifecycle):
    return make_lifecycle(test_db)


@pytest.fixture
def detector(test_db, pricing, lifecycle, notifier):
    return WeightDiscrepancyDetector(test_db, pricing=pricing, lifecycle=lifecycle, notifier=notifier)


# ─── Seed data ──────────────────────────────────────────────────────────────


@pytest.fixture
async def company(test_db):
    company = Company(
        company_id=uuid.UUID(COMPANY_ID),
        name="Chai Point Retail",
        email="ops@chaipoint.example",
        status="active",
    )
    test_db.add(company)
    await test_db.commit()
    return company


@pytest.fixture
async def other_company(test_db):
    company = Company(
        company_id=uuid.UUID(OTHER_COMPANY_ID),
        name="Other Seller",
        email="ops@other.example",
        status="active",
    )
    test_db.add(company)
    await test_db.commit()
    return company


@pytest.fixture
def make_shipment(test_db, company):
    """Register a shipment (and its declared observation) for the test company."""

    async def _make(tracking_id: str = "VEL100001", company_id: str = COMPANY_ID, **overrides):
        fields = {
            "carrier": "velocity",
            "origin_pincode": "560001",
            "destination_pincode": "560103",
            "declared_weight": 0.5,
        }
        fields.update(overrides)
        return await records.register_shipment(test_db, company_id, tracking_id=tracking_id, **fields)

    return _make


# ─── HTTP client ────────────────────────────────────────────────────────────


@pytest.fixture
def mock_user():
    """Mock authenticated seller. Tests flip ``roles`` to exercise admin routes."""
    return {
        "sub": "seller-user-1",
        "email": "ops@chaipoint.example",
        "company_id": COMPANY_ID,
        "roles": ["seller"],
    }


@pytest.fixture
async def client(test_db, mock_user, quoter, notifier, ledger, enqueued):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: mock_user
    app.dependency_overrides[get_quoter] = lambda: quoter
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_settlement_executor] = lambda: ledger
    app.dependency_overrides[get_enqueue_submission] = lambda: enqueued.append

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
