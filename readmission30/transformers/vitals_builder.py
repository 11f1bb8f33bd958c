# transformers/vitals_builder.py
"""
Vitals Feature Builder
======================

First-24h vital signs and ventilator settings.

Each vital aggregate is resolved first_day_vitalsign -> chartevents window.
Ventilator settings (FiO2, PEEP, PIP, tidal volume, plateau) and the
mechanical ventilation flag come from chartevents only.
"""

from typing import Dict, List, Optional, Tuple

import pandas as pd

from ..config.concept_registry import (
    VITAL_STEMS,
    VITAL_CHART_ITEMS,
    VENTILATION_STEMS,
    VENTILATION_CHART_ITEMS,
    MECHVENT_CHART_ITEM,
    vital_concept,
)
from .base_builder import LayerBuilder, available_flag, flag

# (derived stem, aggregate) pairs published by this layer
VITAL_OUTPUTS: List[Tuple[str, str]] = [
    ('heart_rate', 'mean'), ('heart_rate', 'min'), ('heart_rate', 'max'),
    ('temperature', 'mean'), ('temperature', 'min'), ('temperature', 'max'),
    ('sbp', 'mean'), ('sbp', 'min'),
    ('dbp', 'mean'),
    ('mbp', 'mean'),
    ('resp_rate', 'mean'), ('resp_rate', 'max'), ('resp_rate', 'min'),
    ('spo2', 'mean'), ('spo2', 'min'), ('spo2', 'max'),
    ('glucose', 'mean'), ('glucose', 'min'), ('glucose', 'max'),
]

SHOCK_MAP_THRESHOLD = 65
HYPOGLYCEMIA_THRESHOLD = 70
HYPERGLYCEMIA_THRESHOLD = 180


def vital_column(derived_stem: str, agg: str) -> str:
    """Output column for a vital aggregate, e.g. ('heart_rate', 'mean') -> hr_first_24h_mean."""
    return f'{VITAL_STEMS[derived_stem]}_first_24h_{agg}'


def chart_vital_aggregates(builder: LayerBuilder, derived_stem: str) -> pd.DataFrame:
    """Window aggregates of a vital from chartevents (stay match, else admission match)."""
    events = builder.chart_events(VITAL_CHART_ITEMS[derived_stem])
    return builder.first_day_window().aggregate(
        events, derived_stem, unit_column='unit', match='stay_or_admission'
    )


def vital_candidates(
    builder: LayerBuilder,
    derived_stem: str,
    agg: str,
    chart: Optional[pd.DataFrame] = None,
) -> Dict[str, pd.Series]:
    """
    Providers for one vital aggregate.

    Args:
        builder: Layer builder supplying cohort and source
        derived_stem: Vital stem as named in first_day_vitalsign
        agg: 'min', 'max' or 'mean'
        chart: Precomputed chart_vital_aggregates (computed when None)

    Returns:
        Provider name -> Series indexed by index_stay_id
    """
    if chart is None:
        chart = chart_vital_aggregates(builder, derived_stem)
    derived = builder.source.table('first_day_vitalsign')
    return {
        'first_day_vitalsign': builder.stay_values(derived, f'{derived_stem}_{agg}'),
        'chartevents_window': chart[agg],
    }


class VitalsBuilder(LayerBuilder):
    """Build first-24h vital sign and ventilation features."""

    NAME = 'vitals'

    OUTPUT_COLUMNS = [
        'hr_first_24h_mean', 'hr_first_24h_min', 'hr_first_24h_max', 'hr_first_24h_range',
        'temp_c_first_24h_mean', 'temp_c_first_24h_min', 'temp_c_first_24h_max',
        'sbp_first_24h_mean', 'sbp_first_24h_min',
        'dbp_first_24h_mean',
        'mbp_first_24h_mean',
        'shock_flag_map_lt_65',
        'rr_first_24h_mean', 'rr_first_24h_max', 'rr_first_24h_min',
        'spo2_first_24h_mean', 'spo2_first_24h_min', 'spo2_first_24h_max',
        'fio2_first_24h_mean',
        'sf_ratio_approx',
        'glucose_first_24h_mean', 'glucose_first_24h_min', 'glucose_first_24h_max',
        'hypoglycemia_flag', 'hyperglycemia_flag',
        'peep_first_24h_mean', 'pip_first_24h_mean', 'tv_first_24h_mean', 'plateau_first_24h_mean',
        'mechvent_first_24h_flag',
        'hr_available_flag', 'temp_available_flag', 'bp_available_flag',
        'spo2_available_flag', 'fio2_available_flag',
    ]

    def _resolve_vitals(self, features: pd.DataFrame):
        chart_cache: Dict[str, pd.DataFrame] = {}
        implausible: Dict[str, int] = {}

        for derived_stem, agg in VITAL_OUTPUTS:
            if derived_stem not in chart_cache:
                chart_cache[derived_stem] = chart_vital_aggregates(self, derived_stem)
                implausible[derived_stem] = int(chart_cache[derived_stem]['n_implausible'].sum())

            column = vital_column(derived_stem, agg)
            result = self.resolve(
                vital_concept(VITAL_STEMS[derived_stem], agg),
                vital_candidates(self, derived_stem, agg, chart_cache[derived_stem]),
                output_name=column,
            )
            features[column] = result.values.round(2)

        self.stats['chart_implausible_discarded'] = implausible

    def _resolve_ventilation(self, features: pd.DataFrame):
        window = self.first_day_window()
        for out_stem, range_key in VENTILATION_STEMS.items():
            events = self.chart_events(VENTILATION_CHART_ITEMS[range_key])
            # FiO2 is charted as percent or fraction: infer from magnitude
            chart = window.aggregate(events, range_key, unit_column=None, match='stay_or_admission')
            column = f'{out_stem}_first_24h_mean'
            result = self.resolve(column, {'chartevents_window': chart['mean']})
            features[column] = result.values.round(4 if out_stem == 'fio2' else 2)

    def mechvent_flag(self) -> pd.Series:
        """1 when any in-window ventilation-mode chart value is non-zero."""
        events = self.chart_events([MECHVENT_CHART_ITEM])
        selected = self.first_day_window().select_instant(events, match='stay_or_admission')
        if selected.empty:
            return pd.Series(0, index=self.index, dtype='int64')
        values = pd.to_numeric(selected['valuenum'], errors='coerce')
        peak = values.groupby(selected['index_stay_id']).max()
        return flag((peak != 0) & peak.notna()).reindex(self.index).fillna(0).astype('int64')

    def build_features(self) -> pd.DataFrame:
        features = pd.DataFrame(index=self.index)
        self._resolve_vitals(features)
        self._resolve_ventilation(features)

        features['hr_first_24h_range'] = (
            features['hr_first_24h_max'] - features['hr_first_24h_min']
        ).round(2)
        features['shock_flag_map_lt_65'] = flag(features['mbp_first_24h_mean'] < SHOCK_MAP_THRESHOLD)

        fio2 = features['fio2_first_24h_mean']
        features['sf_ratio_approx'] = (
            features['spo2_first_24h_mean'] * 100.0 / fio2.where(fio2 > 0)
        ).round(4)

        features['hypoglycemia_flag'] = flag(features['glucose_first_24h_min'] < HYPOGLYCEMIA_THRESHOLD)
        features['hyperglycemia_flag'] = flag(features['glucose_first_24h_max'] > HYPERGLYCEMIA_THRESHOLD)
        features['mechvent_first_24h_flag'] = self.mechvent_flag()

        features['hr_available_flag'] = available_flag(features['hr_first_24h_mean'])
        features['temp_available_flag'] = available_flag(features['temp_c_first_24h_mean'])
        features['bp_available_flag'] = flag(
            features['sbp_first_24h_mean'].notna() | features['mbp_first_24h_mean'].notna()
        )
        features['spo2_available_flag'] = available_flag(features['spo2_first_24h_mean'])
        features['fio2_available_flag'] = available_flag(fio2)

        self.stats['n_mechvent'] = int(features['mechvent_first_24h_flag'].sum())
        return features
