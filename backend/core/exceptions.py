"""
Domain exceptions for the weight discrepancy engine.

Routers map these onto HTTP status codes; background jobs log them per item
and carry on with the rest of the batch.
"""

from __future__ import annotations

from typing import Any


class ScaleCheckError(Exception):
    """Base class for engine errors."""


class InvalidMeasurement(ScaleCheckError, ValueError):
    """Non-positive or malformed weight / dimension / unit."""


class PricingUnavailable(ScaleCheckError):
    """Pricing engine timed out, errored, or returned no usable quote."""


class DuplicateDispute(ScaleCheckError):
    """An open dispute already exists for the shipment."""

    def __init__(self, existing: Any):
        self.existing = existing
        super().__init__(f"Shipment {existing.shipment_id} already has open dispute {existing.dispute_code}")


class SettlementAlreadyApplied(ScaleCheckError):
    """Settlement for this idempotency key has already been executed."""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Settlement {idempotency_key} already applied")


class LedgerUnavailable(ScaleCheckError):
    """Wallet / ledger service could not be reached or rejected the request."""


class ShipmentBusy(ScaleCheckError):
    """Timed out waiting for the per-shipment lock."""


class CarrierSubmissionFailed(ScaleCheckError):
    """Network or API failure while submitting a dispute to the carrier."""


class InvalidTransition(ScaleCheckError):
    """Illegal state-machine move, or the dispute changed underneath us."""

    def __init__(self, dispute_code: str, current: str, target: str):
        self.dispute_code = dispute_code
        self.current = current
        self.target = target
        super().__init__(f"Cannot move dispute {dispute_code} from '{current}' to '{target}'")


class DisputeNotFound(ScaleCheckError):
    pass


class ShipmentNotFound(ScaleCheckError):
    pass


class SKUNotFound(ScaleCheckError):
    pass
