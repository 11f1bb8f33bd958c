# transformers/labs_builder.py
"""
Labs Feature Builder
====================

First-24h laboratory features.

Every analyte carried by first_day_lab is published as
<analyte>_first_24h_<min|max>. Glucose, creatinine, BUN, lactate, troponin,
magnesium and phosphate fall back to labevents in [intime, intime + 24h),
matched on subject and admission. CRP and the blood gas first/last values
come from labevents only.
"""

from typing import Dict, Optional

import pandas as pd

from ..config.concept_registry import (
    FIRST_DAY_LAB_AGGREGATES,
    LAB_FALLBACK_ANALYTES,
    LAB_ITEMS,
)
from .base_builder import LayerBuilder, available_flag, flag

# flag column -> (source column, comparison, threshold)
LAB_THRESHOLD_FLAGS = {
    'severe_anemia_flag': ('hemoglobin_first_24h_min', '<', 7),
    'elevated_wbc_flag': ('wbc_first_24h_max', '>', 15),
    'acute_kidney_injury_flag': ('creatinine_first_24h_max', '>', 2.0),
    'elevated_lactate_flag': ('lactate_first_24h_max', '>', 4),
    'low_albumin_flag': ('albumin_first_24h_min', '<', 2.0),
    'hypoglycemia_flag': ('glucose_first_24h_min', '<', 70),
    'hyperglycemia_flag': ('glucose_first_24h_max', '>', 180),
}

AVAILABILITY_SOURCES = {
    'glucose_available_flag': 'glucose_first_24h_min',
    'creatinine_available_flag': 'creatinine_first_24h_max',
    'lactate_available_flag': 'lactate_first_24h_max',
    'hemoglobin_available_flag': 'hemoglobin_first_24h_min',
}

BLOOD_GAS_DELTA_DECIMALS = {'ph': 3, 'pco2': 2}


def lab_column(analyte: str, agg: str) -> str:
    return f'{analyte}_first_24h_{agg}'


def threshold_flag(values: pd.Series, op: str, threshold: float) -> pd.Series:
    """0/1 flag for a threshold comparison; null values give 0."""
    if op == '<':
        return flag(values < threshold)
    if op == '>':
        return flag(values > threshold)
    raise ValueError(f"Unsupported comparison: {op}")


def lab_window_aggregates(builder: LayerBuilder, analyte: str) -> pd.DataFrame:
    """Window aggregates of one analyte from labevents (admission match)."""
    events = builder.source.table('labevents')
    events = events[events['itemid'].isin(LAB_ITEMS[analyte])]
    return builder.first_day_window().aggregate(
        events, analyte, unit_column='valueuom', match='admission'
    )


def lab_candidates(
    builder: LayerBuilder,
    analyte: str,
    agg: str,
    window: Optional[pd.DataFrame] = None,
) -> Dict[str, pd.Series]:
    """
    Providers for one lab aggregate.

    Args:
        builder: Layer builder supplying cohort and source
        analyte: Analyte name as in first_day_lab
        agg: 'min' or 'max'
        window: Precomputed lab_window_aggregates (computed when needed)

    Returns:
        Provider name -> Series indexed by index_stay_id
    """
    derived = builder.source.table('first_day_lab')
    candidates = {'first_day_lab': builder.stay_values(derived, f'{analyte}_{agg}')}
    if analyte in LAB_FALLBACK_ANALYTES:
        if window is None:
            window = lab_window_aggregates(builder, analyte)
        candidates['labevents_window'] = window[agg]
    return candidates


class LabsBuilder(LayerBuilder):
    """Build first-24h laboratory features."""

    NAME = 'labs'

    LAB_COLUMNS = [
        lab_column(analyte, agg)
        for analyte, aggs in FIRST_DAY_LAB_AGGREGATES.items()
        for agg in aggs
    ]

    OUTPUT_COLUMNS = LAB_COLUMNS + [
        'crp_first_24h_max',
        'ph_first_24h', 'ph_last_24h', 'ph_delta',
        'pco2_first_24h', 'pco2_last_24h', 'pco2_delta',
    ] + list(LAB_THRESHOLD_FLAGS) + list(AVAILABILITY_SOURCES) + [
        'magnesium_fallback_nobs',
        'phosphate_fallback_nobs',
        'crp_fallback_nobs',
    ]

    def build_features(self) -> pd.DataFrame:
        features = pd.DataFrame(index=self.index)
        windows: Dict[str, pd.DataFrame] = {
            analyte: lab_window_aggregates(self, analyte)
            for analyte in LAB_FALLBACK_ANALYTES + ['crp', 'ph', 'pco2']
        }

        for analyte, aggs in FIRST_DAY_LAB_AGGREGATES.items():
            for agg in aggs:
                column = lab_column(analyte, agg)
                result = self.resolve(
                    column, lab_candidates(self, analyte, agg, windows.get(analyte))
                )
                features[column] = result.values

        crp = self.resolve('crp_first_24h_max', {'labevents_window': windows['crp']['max']})
        features['crp_first_24h_max'] = crp.values

        for analyte, decimals in BLOOD_GAS_DELTA_DECIMALS.items():
            for position in ('first', 'last'):
                column = f'{analyte}_{position}_24h'
                result = self.resolve(column, {'labevents_window': windows[analyte][position]})
                features[column] = result.values
            features[f'{analyte}_delta'] = (
                features[f'{analyte}_last_24h'] - features[f'{analyte}_first_24h']
            ).round(decimals)

        for column, (source_column, op, threshold) in LAB_THRESHOLD_FLAGS.items():
            features[column] = threshold_flag(features[source_column], op, threshold)
        for column, source_column in AVAILABILITY_SOURCES.items():
            features[column] = available_flag(features[source_column])

        features['magnesium_fallback_nobs'] = windows['magnesium']['n_observations']
        features['phosphate_fallback_nobs'] = windows['phosphate']['n_observations']
        features['crp_fallback_nobs'] = windows['crp']['n_observations']

        self.stats['labevents_implausible_discarded'] = {
            analyte: int(frame['n_implausible'].sum()) for analyte, frame in windows.items()
        }
        return features
