# transformers/anthropometry_builder.py
"""
Anthropometry Feature Builder
=============================

Height, weight and BMI at the index ICU admission.

Precedence:
    height: first_day_height -> chart (latest <= intime) -> OMR
    weight: first_day_weight -> chart (latest <= intime) -> inputevents
            -> procedureevents -> OMR
    bmi:    OMR BMI -> computed from the resolved height and weight

Chart items are taken in priority order; within an item the most recent
plausible value charted at or before the index ICU intime wins.
"""

import re
from typing import Dict, Optional

import pandas as pd

from ..config.concept_registry import HEIGHT_CHART_ITEMS, WEIGHT_CHART_ITEMS
from ..utils.unit_conversion import calculate_bmi
from .base_builder import LayerBuilder, available_flag

# Everything that is not part of a number
NON_NUMERIC = re.compile(r'[^0-9.\-]')

OMR_CONCEPTS = {
    'height': 'height',
    'weight': 'weight',
    'bmi': 'bmi',
}


# =============================================================================
# OMR TEXT PARSING
# =============================================================================

def parse_omr_value(text) -> Optional[float]:
    """
    Extract the numeric part of an OMR result.

    Args:
        text: Free-text result value (e.g. '154 lbs', '68"')

    Returns:
        Parsed number, or None when nothing numeric remains
    """
    if text is None or pd.isna(text):
        return None
    cleaned = NON_NUMERIC.sub('', str(text))
    try:
        return float(cleaned)
    except ValueError:
        return None


def _unit_from_text(text: str) -> Optional[str]:
    lowered = text.lower()
    if 'kg' in lowered:
        return 'kg'
    if 'lb' in lowered or 'pound' in lowered:
        return 'lb'
    if 'cm' in lowered:
        return 'cm'
    if 'in' in lowered or '"' in text or 'ft' in lowered:
        return 'in'
    return None


def detect_omr_unit(result_value, result_name=None) -> Optional[str]:
    """
    Detect the unit of an OMR result.

    The value text is checked first ('70 kg', '154 lbs', '170 cm', '68"'),
    then the result name ('Weight (Lbs)', 'Height (Inches)').

    Returns:
        'kg', 'lb', 'cm', 'in' or None
    """
    if result_value is not None and not pd.isna(result_value):
        unit = _unit_from_text(str(result_value))
        if unit:
            return unit
    if result_name is not None and not pd.isna(result_name):
        # BMI names carry 'kg/m2', which is not a unit of the value itself
        name = str(result_name)
        if 'bmi' not in name.lower():
            return _unit_from_text(name)
    return None


def parse_omr(omr: pd.DataFrame) -> pd.DataFrame:
    """
    Parse OMR height / weight / BMI rows.

    Args:
        omr: omr source table

    Returns:
        DataFrame with subject_id, chartdate, concept, result_num, omr_unit
    """
    columns = ['subject_id', 'chartdate', 'concept', 'result_num', 'omr_unit']
    if omr.empty:
        return pd.DataFrame(columns=columns)

    names = omr['result_name'].astype(str).str.lower()
    concept = pd.Series(None, index=omr.index, dtype=object)
    for key, label in OMR_CONCEPTS.items():
        concept[concept.isna() & names.str.contains(key, regex=False)] = label

    parsed = omr.assign(concept=concept)
    parsed = parsed[parsed['concept'].notna()].copy()
    parsed['result_num'] = parsed['result_value'].map(parse_omr_value).astype(float)
    parsed['omr_unit'] = [
        detect_omr_unit(value, name)
        for value, name in zip(parsed['result_value'], parsed['result_name'])
    ]
    return parsed[columns]


# =============================================================================
# SHARED PROVIDERS
# =============================================================================

def _omr_latest(builder: LayerBuilder, concept: str) -> pd.Series:
    """Latest plausible OMR value charted on or before the index ICU intime."""
    parsed = parse_omr(builder.source.table('omr'))
    rows = parsed[parsed['concept'] == concept]
    window = builder.first_day_window()
    return window.latest_at_or_before(
        rows, concept,
        value_column='result_num',
        time_column='chartdate',
        unit_column='omr_unit',
        match='subject',
    )


def _chart_latest(builder: LayerBuilder, itemids, concept: str) -> pd.Series:
    """Latest plausible chart value per item, combined in item priority order."""
    events = builder.chart_events(itemids)
    window = builder.first_day_window()
    combined = builder.empty_series()
    for itemid in itemids:
        latest = window.latest_at_or_before(
            events[events['itemid'] == itemid], concept,
            value_column='valuenum',
            time_column='charttime',
            unit_column='unit',
            match='subject',
        )
        combined = combined.combine_first(latest)
    return combined


def height_candidates(builder: LayerBuilder) -> Dict[str, pd.Series]:
    """Height providers in the form PrecedenceMerger.resolve expects."""
    return {
        'first_day_height': builder.stay_values(builder.source.table('first_day_height'), 'height'),
        'chart_height': _chart_latest(builder, HEIGHT_CHART_ITEMS, 'height'),
        'omr_height': _omr_latest(builder, 'height'),
    }


def weight_candidates(builder: LayerBuilder) -> Dict[str, pd.Series]:
    """Weight providers in the form PrecedenceMerger.resolve expects."""
    return {
        'first_day_weight': builder.stay_values(builder.source.table('first_day_weight'), 'weight'),
        'chart_weight': _chart_latest(builder, WEIGHT_CHART_ITEMS, 'weight'),
        'inputevents_weight': builder.stay_values(builder.source.table('inputevents'), 'patientweight'),
        'procedureevents_weight': builder.stay_values(builder.source.table('procedureevents'), 'patientweight'),
        'omr_weight': _omr_latest(builder, 'weight'),
    }


class AnthropometryBuilder(LayerBuilder):
    """Build height, weight and BMI features."""

    NAME = 'anthropometry'

    OUTPUT_COLUMNS = [
        'height_cm',
        'weight_kg',
        'bmi',
        'height_source',
        'weight_source',
        'bmi_source',
        'height_available_flag',
        'weight_available_flag',
        'bmi_available_flag',
    ]

    def build_features(self) -> pd.DataFrame:
        height = self.resolve('height_cm', height_candidates(self))
        weight = self.resolve('weight_kg', weight_candidates(self))
        bmi = self.resolve('bmi', {
            'omr_bmi': _omr_latest(self, 'bmi'),
            'computed_bmi': calculate_bmi(weight.values, height.values).round(2),
        })

        features = pd.DataFrame(index=self.index)
        features['height_cm'] = height.values.round(2)
        features['weight_kg'] = weight.values.round(2)
        features['bmi'] = bmi.values.round(2)
        features['height_source'] = height.providers.fillna('absent')
        features['weight_source'] = weight.providers.fillna('absent')
        features['bmi_source'] = bmi.providers.fillna('absent')
        features['height_available_flag'] = available_flag(features['height_cm'])
        features['weight_available_flag'] = available_flag(features['weight_kg'])
        features['bmi_available_flag'] = available_flag(features['bmi'])

        self.stats['n_with_height'] = int(features['height_cm'].notna().sum())
        self.stats['n_with_weight'] = int(features['weight_kg'].notna().sum())
        self.stats['n_with_bmi'] = int(features['bmi'].notna().sum())
        return features
