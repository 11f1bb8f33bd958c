# tests/test_normalizer.py
"""Tests for unit conversion and plausibility filtering."""

import numpy as np
import pandas as pd
import pytest

from readmission30.processing.normalizer import (
    normalize_series,
    normalize_unit,
    normalize_value,
    plausible_mask,
    to_canonical_unit,
    within_plausible_range,
)


class TestNormalizeUnit:
    def test_degree_markers_removed(self):
        assert normalize_unit('°F') == 'f'
        assert normalize_unit('degF') == 'f'
        assert normalize_unit(' °C ') == 'c'

    def test_micro_sign_folded(self):
        assert normalize_unit('µmol/L') == 'umol/l'

    def test_missing_unit(self):
        assert normalize_unit(None) is None
        assert normalize_unit(float('nan')) is None
        assert normalize_unit('  ') is None


class TestToCanonicalUnit:
    def test_inches_to_cm(self):
        assert to_canonical_unit(70, 'in', 'height') == pytest.approx(177.8)

    def test_pounds_to_kg(self):
        assert to_canonical_unit(154, 'lbs', 'weight') == pytest.approx(69.853, abs=0.001)

    def test_fahrenheit_to_celsius(self):
        assert to_canonical_unit(98.6, '°F', 'temperature') == pytest.approx(37.0, abs=0.01)

    def test_creatinine_umol(self):
        assert to_canonical_unit(88.42, 'umol/L', 'creatinine') == pytest.approx(1.0)

    def test_height_in_metres_inferred(self):
        """Unit-less 1.75 is read as metres."""
        assert to_canonical_unit(1.75, None, 'height') == pytest.approx(175.0)

    def test_height_in_inches_inferred(self):
        assert to_canonical_unit(70, None, 'height') == pytest.approx(177.8)

    def test_height_already_cm(self):
        assert to_canonical_unit(175, None, 'height') == 175

    def test_fahrenheit_inferred(self):
        assert to_canonical_unit(98.6, None, 'temperature') == pytest.approx(37.0, abs=0.01)

    def test_fio2_fraction_inferred(self):
        assert to_canonical_unit(0.5, None, 'fio2') == pytest.approx(50.0)
        assert to_canonical_unit(40, None, 'fio2') == 40

    def test_unknown_unit_returns_none(self):
        assert to_canonical_unit(5, 'stone', 'weight') is None

    def test_non_numeric_returns_none(self):
        assert to_canonical_unit('abc', 'kg', 'weight') is None
        assert to_canonical_unit(None, 'kg', 'weight') is None

    def test_unit_free_concept_passthrough(self):
        assert to_canonical_unit(88, None, 'heart_rate') == 88


class TestPlausibleRange:
    def test_inclusive_bounds(self):
        assert within_plausible_range(30, 'weight')
        assert within_plausible_range(300, 'weight')

    def test_outside_bounds(self):
        assert not within_plausible_range(900, 'weight')
        assert not within_plausible_range(29.9, 'weight')

    def test_null_is_not_plausible(self):
        assert not within_plausible_range(None, 'weight')
        assert not within_plausible_range(np.nan, 'weight')

    def test_unknown_concept_not_filtered(self):
        assert within_plausible_range(1e9, 'no_such_concept')

    def test_normalize_value_discards_not_clamps(self):
        assert normalize_value(900, 'kg', 'weight') is None
        assert normalize_value(154, 'lb', 'weight') == pytest.approx(69.853, abs=0.001)

    def test_plausible_mask(self):
        mask = plausible_mask(pd.Series([10.0, 70.0, np.nan]), 'weight')
        assert mask.tolist() == [False, True, False]


class TestNormalizeSeries:
    def test_mixed_temperatures(self):
        values = pd.Series([98.6, 37.0, 400.0])
        result = normalize_series(values, 'temperature')
        assert result.iloc[0] == pytest.approx(37.0, abs=0.01)
        assert result.iloc[1] == pytest.approx(37.0)
        assert pd.isna(result.iloc[2])

    def test_declared_units(self):
        values = pd.Series([154.0, 70.0])
        units = pd.Series(['lb', 'kg'])
        result = normalize_series(values, 'weight', units)
        assert result.iloc[0] == pytest.approx(69.853, abs=0.001)
        assert result.iloc[1] == 70.0

    def test_single_unit_for_all_rows(self):
        result = normalize_series(pd.Series([100.0, 200.0]), 'weight', 'lb')
        assert result.tolist() == pytest.approx([45.359, 90.718], abs=0.001)

    def test_unconvertible_unit_is_nan(self):
        result = normalize_series(pd.Series([5.0]), 'weight', pd.Series(['stone']))
        assert pd.isna(result.iloc[0])


class TestCanonicalRoundTrip:
    """Converting an already canonical value again leaves it unchanged."""

    @pytest.mark.parametrize('value, unit, concept', [
        (70, 'in', 'height'),
        (1.75, None, 'height'),
        (68, None, 'height'),
        (175, 'cm', 'height'),
        (154, 'lb', 'weight'),
        (80, None, 'weight'),
        (98.6, '°F', 'temperature'),
        (101.3, None, 'temperature'),
        (37.0, None, 'temperature'),
        (0.4, None, 'fio2'),
        (0.5, 'fraction', 'fio2'),
        (40, '%', 'fio2'),
    ])
    def test_second_conversion_is_identity(self, value, unit, concept):
        from readmission30.config.concept_registry import UNIT_CONVERSIONS
        once = to_canonical_unit(value, unit, concept)
        assert within_plausible_range(once, concept)

        target = UNIT_CONVERSIONS[concept]['target']
        assert to_canonical_unit(once, target, concept) == pytest.approx(once)
        assert to_canonical_unit(once, None, concept) == pytest.approx(once)

    @pytest.mark.parametrize('concept, raw', [
        ('height', [1.8, 70.0, 180.0]),
        ('temperature', [99.5, 37.2]),
        ('fio2', [0.3, 60.0]),
    ])
    def test_series_normalization_is_idempotent(self, concept, raw):
        once = normalize_series(pd.Series(raw), concept)
        twice = normalize_series(once, concept)
        pd.testing.assert_series_equal(twice, once)
