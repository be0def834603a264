"""
Tests for unit normalization and volumetric / chargeable weight math.
"""

import pytest

from core.exceptions import InvalidMeasurement
from weights.converter import (
    Dimensions,
    chargeable_weight,
    dimensions_or_none,
    to_dimensions,
    to_kilograms,
    volumetric_weight,
)


class TestToKilograms:
    def test_grams(self):
        assert to_kilograms(850, "g") == 0.85

    def test_kilograms_default_unit(self):
        assert to_kilograms(1.25) == 1.25

    def test_pounds(self):
        assert to_kilograms(2, "lbs") == pytest.approx(0.9072, abs=1e-4)

    def test_unit_is_case_insensitive(self):
        assert to_kilograms("500", " GMS ") == 0.5

    @pytest.mark.parametrize("value", [0, -1, "abc", None, float("nan")])
    def test_rejects_non_positive_or_malformed(self, value):
        with pytest.raises(InvalidMeasurement):
            to_kilograms(value, "kg")

    def test_rejects_unknown_unit(self):
        with pytest.raises(InvalidMeasurement, match="Unknown weight unit"):
            to_kilograms(1, "stone")


class TestVolumetric:
    def test_standard_divisor(self):
        dims = Dimensions(40, 40, 30)
        assert volumetric_weight(dims, 5000) == 9.6

    def test_millimetres_are_converted(self):
        dims = to_dimensions(400, 400, 300, "mm")
        assert volumetric_weight(dims, 5000) == pytest.approx(9.6)

    def test_zero_divisor_rejected(self):
        with pytest.raises(InvalidMeasurement):
            volumetric_weight(Dimensions(10, 10, 10), 0)

    def test_partial_dimensions_are_ignored(self):
        assert dimensions_or_none(10, None, 5) is None

    def test_zero_side_rejected(self):
        with pytest.raises(InvalidMeasurement):
            to_dimensions(10, 0, 5)


class TestChargeable:
    def test_dead_weight_wins(self):
        assert chargeable_weight(2.0, 1.2) == 2.0

    def test_volumetric_wins(self):
        assert chargeable_weight(0.2, 9.6) == 9.6

    def test_no_volumetric(self):
        assert chargeable_weight(0.5) == 0.5

    def test_rejects_non_positive(self):
        with pytest.raises(InvalidMeasurement):
            chargeable_weight(0, 1.0)
