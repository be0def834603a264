"""Canonical carrier weight reading, produced by the carrier adapters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from weights.converter import Dimensions


@dataclass(frozen=True)
class ReportedWeight:
    tracking_id: str
    weight_kg: float
    dimensions: Dimensions | None = None
    scanned_at: datetime | None = None
    location: str | None = None
    stage: str = "scanned"
    source: str = "webhook"
    carrier: str | None = None
    external_ref: str | None = None
