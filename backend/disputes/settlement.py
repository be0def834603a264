"""
Dispute Settlement — resolution outcomes and ledger execution.

Every terminal outcome is one of a closed set of resolution types. A single
function turns (dispute, resolution) into the settlement to apply, so the
billing rules live in one table instead of per-endpoint branches.

Settlement is exactly-once per dispute: the Settlement row (unique on
dispute_id and idempotency_key) is written in the same transaction as the
terminal status change, and the ledger is called with the dispute ID as the
idempotency key. A failed ledger call leaves the row ``failed`` for the retry
job; it is never re-created.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.exceptions import LedgerUnavailable, SettlementAlreadyApplied
from db.models import Settlement, WeightDispute

logger = structlog.get_logger()


class ResolutionType(str, Enum):
    SELLER_ACCEPTED = "seller_accepted"
    AUTO_ACCEPTED = "auto_accepted"
    SELLER_FAVOR = "seller_favor"
    CARRIER_FAVOR = "carrier_favor"
    PARTIAL_ADJUSTMENT = "partial_adjustment"
    WITHDRAWN = "withdrawn"


class BillingBasis(str, Enum):
    DECLARED = "declared"
    REPORTED = "reported"
    ADJUSTED = "adjusted"


# resolution → (terminal status, weight the shipment is finally billed at)
RESOLUTION_OUTCOMES: dict[ResolutionType, tuple[str, BillingBasis]] = {
    ResolutionType.SELLER_ACCEPTED: ("accepted", BillingBasis.REPORTED),
    ResolutionType.AUTO_ACCEPTED: ("auto_accepted", BillingBasis.REPORTED),
    ResolutionType.SELLER_FAVOR: ("resolved_in_favor", BillingBasis.DECLARED),
    ResolutionType.CARRIER_FAVOR: ("resolved_against", BillingBasis.REPORTED),
    ResolutionType.PARTIAL_ADJUSTMENT: ("partial_resolution", BillingBasis.ADJUSTED),
    ResolutionType.WITHDRAWN: ("withdrawn", BillingBasis.DECLARED),
}


@dataclass(frozen=True)
class Resolution:
    type: ResolutionType
    actor: str = "system"
    notes: str | None = None
    # Only for PARTIAL_ADJUSTMENT
    adjusted_weight_kg: float | None = None
    adjusted_cost: float | None = None

    @property
    def target_status(self) -> str:
        return RESOLUTION_OUTCOMES[self.type][0]

    @property
    def basis(self) -> BillingBasis:
        return RESOLUTION_OUTCOMES[self.type][1]


@dataclass(frozen=True)
class SettlementPlan:
    final_weight_kg: float
    final_cost: float
    amount: float  # signed: positive = seller owes (debit), negative = refund (credit)
    direction: str
    idempotency_key: str
    reason: str

    @property
    def refund_amount(self) -> float:
        return round(-self.amount, 2) if self.amount < 0 else 0.0

    @property
    def debit_amount(self) -> float:
        return round(self.amount, 2) if self.amount > 0 else 0.0


def compute_settlement(dispute: WeightDispute, resolution: Resolution) -> SettlementPlan:
    """Final billing weight/cost and the signed ledger movement for a resolution."""
    basis = resolution.basis
    if basis is BillingBasis.DECLARED:
        final_weight, final_cost = dispute.declared_weight_kg, dispute.declared_cost
    elif basis is BillingBasis.REPORTED:
        final_weight, final_cost = dispute.actual_weight_kg, dispute.actual_cost
    else:
        if resolution.adjusted_weight_kg is None or resolution.adjusted_cost is None:
            raise ValueError("Partial resolution requires an adjusted weight and its quoted cost")
        final_weight, final_cost = resolution.adjusted_weight_kg, resolution.adjusted_cost

    amount = round(final_cost - dispute.declared_cost, 2)
    if amount > 0:
        direction = "debit"
    elif amount < 0:
        direction = "credit"
    else:
        direction = "none"

    return SettlementPlan(
        final_weight_kg=round(final_weight, 4),
        final_cost=round(final_cost, 2),
        amount=amount,
        direction=direction,
        idempotency_key=str(dispute.dispute_id),
        reason=f"Weight dispute {dispute.dispute_code}: {resolution.type.value}",
    )


def build_settlement_row(dispute: WeightDispute, plan: SettlementPlan) -> Settlement:
    return Settlement(
        dispute_id=dispute.dispute_id,
        company_id=dispute.company_id,
        idempotency_key=plan.idempotency_key,
        direction=plan.direction,
        amount=abs(plan.amount),
        reason=plan.reason,
        status="skipped" if plan.direction == "none" else "pending",
    )


# ──────────────────────────────────────────────────────────────────────────
# Ledger collaborator
# ──────────────────────────────────────────────────────────────────────────


class SettlementExecutor(ABC):
    """Wallet / ledger mutation interface. Must honour the idempotency key."""

    @abstractmethod
    async def credit(self, company_id: str, amount: float, idempotency_key: str, reason: str) -> str | None:
        ...

    @abstractmethod
    async def debit(self, company_id: str, amount: float, idempotency_key: str, reason: str) -> str | None:
        ...


class HttpSettlementExecutor(SettlementExecutor):
    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.base_url = (base_url or settings.ledger_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.ledger_timeout_seconds

    async def credit(self, company_id: str, amount: float, idempotency_key: str, reason: str) -> str | None:
        return await self._post("credit", company_id, amount, idempotency_key, reason)

    async def debit(self, company_id: str, amount: float, idempotency_key: str, reason: str) -> str | None:
        return await self._post("debit", company_id, amount, idempotency_key, reason)

    async def _post(self, direction: str, company_id: str, amount: float, idempotency_key: str, reason: str):
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/v1/wallets/{company_id}/{direction}",
                    json={"amount": amount, "reason": reason, "reference_type": "weight_dispute"},
                    headers={"Idempotency-Key": idempotency_key},
                )
        except httpx.HTTPError as exc:
            raise LedgerUnavailable(f"Ledger {direction} failed: {exc}") from exc

        if resp.status_code == 409:
            raise SettlementAlreadyApplied(idempotency_key)
        if resp.status_code >= 400:
            raise LedgerUnavailable(f"Ledger {direction} returned HTTP {resp.status_code}")
        return resp.json().get("transaction_id")


async def execute_settlement(db: AsyncSession, settlement: Settlement, executor: SettlementExecutor) -> Settlement:
    """
    Push a pending/failed settlement to the ledger and record the outcome.

    Safe to call repeatedly: applied/skipped rows are left alone, and the
    ledger deduplicates on idempotency_key.
    """
    if settlement.status in ("applied", "skipped"):
        return settlement

    log = logger.bind(
        settlement_id=str(settlement.settlement_id),
        dispute_id=str(settlement.dispute_id),
        direction=settlement.direction,
        amount=settlement.amount,
    )
    settlement.attempts = (settlement.attempts or 0) + 1
    call = executor.debit if settlement.direction == "debit" else executor.credit

    try:
        reference = await call(
            str(settlement.company_id),
            settlement.amount,
            settlement.idempotency_key,
            settlement.reason,
        )
    except SettlementAlreadyApplied:
        log.warning("settlement.already_applied", idempotency_key=settlement.idempotency_key)
        settlement.status = "applied"
        settlement.applied_at = settlement.applied_at or datetime.utcnow()
    except LedgerUnavailable as exc:
        log.error("settlement.failed", attempts=settlement.attempts, error=str(exc))
        settlement.status = "failed"
        settlement.last_error = str(exc)
    else:
        settlement.status = "applied"
        settlement.ledger_reference = reference
        settlement.applied_at = datetime.utcnow()
        settlement.last_error = None
        log.info("settlement.applied", ledger_reference=reference)

    await db.commit()
    return settlement
