"""
Carrier integrations package.

Pluggable adapters turning courier webhook payloads into canonical readings,
plus the outbound dispute submitter (API or email, per carrier).

Usage:
    from integrations import get_adapter

    reading = get_adapter("delhivery").parse_weight_event(payload)
    result = await detector.process(reading)
"""

from integrations.base import (
    CarrierCode,
    CarrierDisputeResponse,
    CarrierWebhookAdapter,
    get_adapter,
    register_adapter,
)
from integrations.carriers import DelhiveryAdapter, EkartAdapter, GenericAdapter, VelocityAdapter

__all__ = [
    "CarrierCode",
    "CarrierDisputeResponse",
    "CarrierWebhookAdapter",
    "get_adapter",
    "register_adapter",
    "VelocityAdapter",
    "DelhiveryAdapter",
    "EkartAdapter",
    "GenericAdapter",
]
