"""
Pricing Quoter — shipping cost for a package on a route.

The authoritative source is the rate-card pricing engine, reached over HTTP.
When it times out or errors, a flat per-kg zone table gives a degraded
estimate; every such estimate is tagged ``fallback_zone`` so it is never
mistaken for a real quote, and its usage is counted.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.exceptions import PricingUnavailable
from pricing.zones import ZoneResolver, get_zone_resolver
from weights.converter import Dimensions

logger = structlog.get_logger()

# INR per kg, per zone. Degraded mode only.
FALLBACK_RATE_PER_KG = {"A": 40.0, "B": 48.0, "C": 56.0, "D": 64.0, "E": 80.0}
FALLBACK_RATECARD_VERSION = "fallback-zone-table-v1"
WEIGHT_SLAB_KG = 0.5
COD_MIN_CHARGE = 30.0
COD_RATE = 0.015
GST_RATE = 0.18


@dataclass(frozen=True)
class Quote:
    total: float
    ratecard_version: str
    zone: str | None = None
    breakdown: dict = field(default_factory=dict)


@dataclass(frozen=True)
class QuoteRequest:
    """Route + payment terms held constant across a declared/actual quote pair."""

    origin_pincode: str
    destination_pincode: str
    payment_mode: str = "prepaid"
    order_value: float = 0.0
    carrier: str | None = None

    @classmethod
    def for_shipment(cls, shipment) -> "QuoteRequest":
        return cls(
            origin_pincode=shipment.origin_pincode,
            destination_pincode=shipment.destination_pincode,
            payment_mode=shipment.payment_mode or "prepaid",
            order_value=shipment.order_value or 0.0,
            carrier=shipment.carrier,
        )


@dataclass(frozen=True)
class FinancialImpact:
    declared_cost: float
    actual_cost: float
    difference: float
    charge_direction: str
    ratecard_version: str
    calculation_method: str
    zone: str | None = None

    @property
    def magnitude(self) -> float:
        return abs(self.difference)


class PricingQuoter(ABC):
    """Rate-card pricing engine interface."""

    @abstractmethod
    async def quote(
        self,
        origin: str,
        destination: str,
        weight_kg: float,
        dimensions: Dimensions | None,
        payment_mode: str,
        order_value: float = 0.0,
        carrier: str | None = None,
    ) -> Quote:
        """Return a deterministic cost for the package. Raises PricingUnavailable."""
        ...


class HttpPricingQuoter(PricingQuoter):
    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.base_url = (base_url or settings.pricing_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.pricing_timeout_seconds

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=0.2, max=2),
        reraise=True,
    )
    async def _post_quote(self, payload: dict) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(f"{self.base_url}/api/v1/quotes", json=payload)
            resp.raise_for_status()
        return resp.json()

    async def quote(
        self,
        origin: str,
        destination: str,
        weight_kg: float,
        dimensions: Dimensions | None,
        payment_mode: str,
        order_value: float = 0.0,
        carrier: str | None = None,
    ) -> Quote:
        payload = {
            "from_pincode": origin,
            "to_pincode": destination,
            "weight_kg": weight_kg,
            "dimensions": dimensions.as_dict() if dimensions else None,
            "payment_mode": payment_mode,
            "order_value": order_value,
            "carrier": carrier,
        }
        try:
            body = await self._post_quote(payload)
        except (httpx.HTTPError, ValueError) as exc:
            raise PricingUnavailable(f"Pricing engine request failed: {exc}") from exc

        try:
            return Quote(
                total=round(float(body["total"]), 2),
                ratecard_version=str(body["ratecard_version_id"]),
                zone=body.get("zone"),
                breakdown=body.get("breakdown") or {},
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PricingUnavailable(f"Pricing engine returned an unusable quote: {body!r}") from exc


def fallback_quote(zone: str, weight_kg: float, payment_mode: str, order_value: float = 0.0) -> Quote:
    """Linear zone-table estimate: slab freight + COD + GST."""
    rate = FALLBACK_RATE_PER_KG.get(zone, FALLBACK_RATE_PER_KG["D"])
    billed_kg = max(WEIGHT_SLAB_KG, math.ceil(weight_kg / WEIGHT_SLAB_KG) * WEIGHT_SLAB_KG)
    freight = rate * billed_kg
    cod = max(COD_MIN_CHARGE, order_value * COD_RATE) if payment_mode == "cod" else 0.0
    gst = (freight + cod) * GST_RATE
    return Quote(
        total=round(freight + cod + gst, 2),
        ratecard_version=FALLBACK_RATECARD_VERSION,
        zone=zone,
        breakdown={
            "billed_kg": billed_kg,
            "freight": round(freight, 2),
            "cod": round(cod, 2),
            "gst": round(gst, 2),
        },
    )


class PricingService:
    """
    Computes the financial impact of a weight discrepancy.

    Calls the quoter exactly twice (declared, actual) with route, payment mode
    and order value held constant. If either call fails, both sides are
    re-priced from the zone table so the difference is never mixed-source.
    """

    def __init__(self, quoter: PricingQuoter, zone_resolver: ZoneResolver | None = None):
        self.quoter = quoter
        self.zone_resolver = zone_resolver or get_zone_resolver()
        self.quote_count = 0
        self.fallback_count = 0

    async def cost_at(self, request: QuoteRequest, weight_kg: float, dimensions: Dimensions | None) -> Quote:
        """Single quote, falling back to the zone table on failure."""
        try:
            quote = await self.quoter.quote(
                request.origin_pincode,
                request.destination_pincode,
                weight_kg,
                dimensions,
                request.payment_mode,
                request.order_value,
                request.carrier,
            )
            self.quote_count += 1
            return quote
        except PricingUnavailable as exc:
            self.fallback_count += 1
            zone = self.zone_resolver.resolve(request.origin_pincode, request.destination_pincode)
            logger.warning("pricing.fallback_zone", zone=zone, weight_kg=weight_kg, error=str(exc))
            return fallback_quote(zone, weight_kg, request.payment_mode, request.order_value)

    async def financial_impact(
        self,
        request: QuoteRequest,
        declared_kg: float,
        declared_dims: Dimensions | None,
        actual_kg: float,
        actual_dims: Dimensions | None,
    ) -> FinancialImpact:
        method = "quote"
        try:
            declared = await self.quoter.quote(
                request.origin_pincode,
                request.destination_pincode,
                declared_kg,
                declared_dims,
                request.payment_mode,
                request.order_value,
                request.carrier,
            )
            actual = await self.quoter.quote(
                request.origin_pincode,
                request.destination_pincode,
                actual_kg,
                actual_dims,
                request.payment_mode,
                request.order_value,
                request.carrier,
            )
            self.quote_count += 2
        except PricingUnavailable as exc:
            method = "fallback_zone"
            self.fallback_count += 1
            zone = self.zone_resolver.resolve(request.origin_pincode, request.destination_pincode)
            logger.warning(
                "pricing.fallback_zone",
                zone=zone,
                declared_kg=declared_kg,
                actual_kg=actual_kg,
                error=str(exc),
            )
            declared = fallback_quote(zone, declared_kg, request.payment_mode, request.order_value)
            actual = fallback_quote(zone, actual_kg, request.payment_mode, request.order_value)

        difference = round(actual.total - declared.total, 2)
        if difference > 0:
            direction = "debit"
        elif difference < 0:
            direction = "credit"
        else:
            direction = "none"

        return FinancialImpact(
            declared_cost=declared.total,
            actual_cost=actual.total,
            difference=difference,
            charge_direction=direction,
            ratecard_version=actual.ratecard_version,
            calculation_method=method,
            zone=actual.zone or declared.zone,
        )
