"""
Carrier Webhook Adapter — Abstract Base Class

Every courier posts weight scans and dispute decisions in its own shape
(grams vs kilograms, nested vs flat, epoch vs ISO timestamps). Adapters
turn those payloads into canonical ``ReportedWeight`` readings and
``CarrierDisputeResponse`` decisions so the detector and the lifecycle
never see carrier-specific fields.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from core.exceptions import InvalidMeasurement
from weights.converter import Dimensions, dimensions_or_none, to_kilograms
from weights.readings import ReportedWeight

logger = structlog.get_logger()


# ── Carrier codes ─────────────────────────────────────────────────────────


class CarrierCode(str, Enum):
    """Couriers with a dedicated payload adapter."""

    VELOCITY = "velocity"
    DELHIVERY = "delhivery"
    EKART = "ekart"
    GENERIC = "generic"  # Anything posting the canonical shape


@dataclass
class CarrierDisputeResponse:
    """Carrier decision on a dispute we submitted."""

    reference: str
    outcome: str  # accepted | rejected | partial
    adjusted_weight_kg: float | None = None
    notes: str | None = None


# ── Shared payload helpers ────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 strings or epoch seconds/milliseconds, returned as naive UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidMeasurement(f"Unparseable timestamp '{value}'") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def require(payload: dict[str, Any], *path: str) -> Any:
    """Walk a nested payload, raising InvalidMeasurement on a missing key."""
    node: Any = payload
    for key in path:
        if not isinstance(node, dict) or node.get(key) in (None, ""):
            raise InvalidMeasurement(f"Payload is missing '{'.'.join(path)}'")
        node = node[key]
    return node


def parse_dimensions(raw: dict[str, Any] | None, unit: str = "cm") -> Dimensions | None:
    if not raw:
        return None
    return dimensions_or_none(
        raw.get("length"),
        raw.get("width", raw.get("breadth")),
        raw.get("height"),
        raw.get("unit", unit),
    )


# ── Abstract adapter ──────────────────────────────────────────────────────


class CarrierWebhookAdapter(ABC):
    """
    Base class for courier webhook payload adapters.

    Lifecycle:
        1. __init__(config)               — optional per-carrier overrides
        2. parse_weight_event(payload)    — weight scan → ReportedWeight
        3. parse_dispute_response(payload) — decision → CarrierDisputeResponse
    """

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}
        self.logger = logger.bind(adapter=self.carrier.value)

    @property
    @abstractmethod
    def carrier(self) -> CarrierCode:
        """Return the carrier this adapter handles."""
        ...

    @abstractmethod
    def parse_weight_event(self, payload: dict[str, Any]) -> ReportedWeight:
        """Normalize a weight scan payload."""
        ...

    def parse_dispute_response(self, payload: dict[str, Any]) -> CarrierDisputeResponse:
        """Most couriers answer with the same flat shape; override where not."""
        outcome = str(require(payload, "outcome")).lower()
        adjusted = payload.get("adjusted_weight")
        adjusted_kg = (
            to_kilograms(adjusted, payload.get("adjusted_weight_unit", "kg")) if adjusted is not None else None
        )
        return CarrierDisputeResponse(
            reference=str(require(payload, "reference")),
            outcome=outcome,
            adjusted_weight_kg=adjusted_kg,
            notes=payload.get("notes"),
        )


# ── Adapter registry ──────────────────────────────────────────────────────

_ADAPTER_REGISTRY: dict[CarrierCode, type[CarrierWebhookAdapter]] = {}


def register_adapter(adapter_cls: type[CarrierWebhookAdapter]):
    """Decorator: register an adapter class for its carrier."""
    _ADAPTER_REGISTRY[adapter_cls.carrier.fget(None)] = adapter_cls  # type: ignore
    return adapter_cls


def get_adapter(carrier: str, config: dict[str, Any] | None = None) -> CarrierWebhookAdapter:
    """Factory: the carrier's adapter, or the generic one for unknown couriers."""
    try:
        code = CarrierCode(carrier.lower())
    except ValueError:
        code = CarrierCode.GENERIC
    adapter_cls = _ADAPTER_REGISTRY.get(code) or _ADAPTER_REGISTRY.get(CarrierCode.GENERIC)
    if adapter_cls is None:
        raise ValueError(f"No adapter registered for carrier: {carrier}")
    return adapter_cls(config=config)
