"""
Unit & Range Normalizer
=======================

Pure value transformations used by every feature layer:

- to_canonical_unit: convert a value to its concept's canonical unit, using
  the declared unit when present and magnitude rules when it is not
- within_plausible_range: inclusive static bounds check per concept
- normalize_series: vectorized convert-then-filter for event streams

Implausible values are discarded (set to null), never clamped.
"""

from typing import Optional

import numpy as np
import pandas as pd

from ..config.concept_registry import (
    PLAUSIBLE_RANGES,
    UNIT_CONVERSIONS,
    MAGNITUDE_RULES,
)


def normalize_unit(unit) -> Optional[str]:
    """
    Normalize a unit string for matching.

    Lower-cases, drops whitespace and degree markers, and folds micro signs,
    so '°F', 'degF' and 'F' all become 'f'.

    Args:
        unit: Raw unit string (may be None/NaN)

    Returns:
        Normalized unit, or None when no unit is declared
    """
    if unit is None:
        return None
    if isinstance(unit, float) and np.isnan(unit):
        return None

    normalized = str(unit).strip().lower()
    normalized = normalized.replace(' ', '').replace('°', '')
    normalized = normalized.replace('µ', 'u').replace('μ', 'u')
    if normalized.startswith('deg'):
        normalized = normalized[3:]

    return normalized or None


def infer_unit(value: float, concept: str) -> Optional[str]:
    """Guess the unit of a unit-less value from its magnitude."""
    for lo, hi, unit in MAGNITUDE_RULES.get(concept, []):
        if lo <= value <= hi:
            return unit
    return None


def to_canonical_unit(value, unit, concept: str) -> Optional[float]:
    """
    Convert a value to the canonical unit of a concept.

    Args:
        value: Numeric value (or numeric string)
        unit: Declared unit, or None to infer from magnitude
        concept: Concept key from the registry (e.g. 'height', 'weight')

    Returns:
        Value in canonical units, or None when the value is missing,
        non-numeric, or carries a unit that cannot be converted
    """
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if np.isnan(value):
        return None

    conversion = UNIT_CONVERSIONS.get(concept)
    if conversion is None:
        return value

    unit = normalize_unit(unit)
    if unit is None:
        unit = infer_unit(value, concept) or conversion['target']

    if unit in conversion['factors']:
        return value * conversion['factors'][unit]

    func = conversion.get('functions', {}).get(unit)
    if func is not None:
        return func(value)

    return None


def within_plausible_range(value, concept: str) -> bool:
    """Check if a canonical-unit value is within its concept's bounds.

    Args:
        value: Canonical-unit value
        concept: Concept key

    Returns:
        True if plausible; False for null or out-of-range values
    """
    if value is None or pd.isna(value):
        return False
    if concept not in PLAUSIBLE_RANGES:
        return True  # Unknown concept, don't filter

    min_val, max_val = PLAUSIBLE_RANGES[concept]
    return min_val <= value <= max_val


def normalize_value(value, unit, concept: str) -> Optional[float]:
    """Convert to canonical units and discard implausible results."""
    converted = to_canonical_unit(value, unit, concept)
    if not within_plausible_range(converted, concept):
        return None
    return converted


def plausible_mask(values: pd.Series, concept: str) -> pd.Series:
    """Vectorized within_plausible_range; nulls are never plausible."""
    if concept not in PLAUSIBLE_RANGES:
        return values.notna()
    min_val, max_val = PLAUSIBLE_RANGES[concept]
    return values.between(min_val, max_val)


def convert_series(values: pd.Series, concept: str, units=None) -> pd.Series:
    """
    Vectorized to_canonical_unit.

    Args:
        values: Raw values
        concept: Concept key
        units: Series of declared units aligned to values, a single unit
            string for all rows, or None to infer every unit from magnitude

    Returns:
        Float Series in canonical units (NaN where not convertible)
    """
    numeric = pd.to_numeric(values, errors='coerce').astype(float)
    conversion = UNIT_CONVERSIONS.get(concept)
    if conversion is None:
        return numeric

    if units is None:
        unit_norm = pd.Series(None, index=numeric.index, dtype=object)
    elif isinstance(units, pd.Series):
        unit_norm = units.reindex(numeric.index).map(normalize_unit).astype(object)
    else:
        unit_norm = pd.Series(normalize_unit(units), index=numeric.index, dtype=object)

    for lo, hi, unit in MAGNITUDE_RULES.get(concept, []):
        hit = unit_norm.isna() & numeric.between(lo, hi)
        unit_norm[hit] = unit
    unit_norm = unit_norm.fillna(conversion['target'])

    converted = pd.Series(np.nan, index=numeric.index, dtype=float)
    for unit, factor in conversion['factors'].items():
        mask = unit_norm == unit
        converted[mask] = numeric[mask] * factor
    for unit, func in conversion.get('functions', {}).items():
        mask = unit_norm == unit
        converted[mask] = func(numeric[mask])

    return converted


def normalize_series(values: pd.Series, concept: str, units=None) -> pd.Series:
    """Vectorized normalize_value: convert, then null out implausible values."""
    converted = convert_series(values, concept, units)
    return converted.where(plausible_mask(converted, concept))
