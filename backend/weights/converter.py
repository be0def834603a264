"""
Weight Converter — unit normalization and volumetric math.

Pure functions. Everything downstream works in kilograms and centimetres;
carrier payloads arrive in grams, kilograms or pounds and get normalized here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from core.exceptions import InvalidMeasurement

_TO_KG = {
    "kg": 1.0,
    "kgs": 1.0,
    "kilogram": 1.0,
    "kilograms": 1.0,
    "g": 0.001,
    "gm": 0.001,
    "gms": 0.001,
    "gram": 0.001,
    "grams": 0.001,
    "lb": 0.45359237,
    "lbs": 0.45359237,
}

_TO_CM = {
    "cm": 1.0,
    "mm": 0.1,
    "m": 100.0,
    "in": 2.54,
    "inch": 2.54,
}


@dataclass(frozen=True)
class Dimensions:
    """Package dimensions in centimetres."""

    length: float
    width: float
    height: float

    @property
    def volume_cm3(self) -> float:
        return self.length * self.width * self.height

    def as_dict(self) -> dict[str, float]:
        return {"length": self.length, "width": self.width, "height": self.height}


def _require_positive(value, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidMeasurement(f"{label} must be a number, got {value!r}") from exc
    if math.isnan(number) or math.isinf(number) or number <= 0:
        raise InvalidMeasurement(f"{label} must be positive, got {value!r}")
    return number


def to_kilograms(value, unit: str = "kg") -> float:
    """Normalize a weight reading to kilograms."""
    factor = _TO_KG.get((unit or "kg").strip().lower())
    if factor is None:
        raise InvalidMeasurement(f"Unknown weight unit '{unit}'")
    return round(_require_positive(value, "weight") * factor, 4)


def to_dimensions(length, width, height, unit: str = "cm") -> Dimensions:
    factor = _TO_CM.get((unit or "cm").strip().lower())
    if factor is None:
        raise InvalidMeasurement(f"Unknown dimension unit '{unit}'")
    return Dimensions(
        length=_require_positive(length, "length") * factor,
        width=_require_positive(width, "width") * factor,
        height=_require_positive(height, "height") * factor,
    )


def dimensions_or_none(length, width, height, unit: str = "cm") -> Dimensions | None:
    """Build Dimensions when all three sides are present, else None."""
    if length is None or width is None or height is None:
        return None
    return to_dimensions(length, width, height, unit)


def volumetric_weight(dims: Dimensions, divisor: int | float = 5000) -> float:
    """(L × W × H) / divisor, in kilograms."""
    divisor = _require_positive(divisor, "dim divisor")
    return round(dims.volume_cm3 / divisor, 4)


def chargeable_weight(actual_kg: float, volumetric_kg: float | None = None) -> float:
    """The weight a carrier bills: max(dead weight, volumetric weight)."""
    actual_kg = _require_positive(actual_kg, "weight")
    if volumetric_kg is None:
        return actual_kg
    volumetric_kg = _require_positive(volumetric_kg, "volumetric weight")
    return max(actual_kg, volumetric_kg)
