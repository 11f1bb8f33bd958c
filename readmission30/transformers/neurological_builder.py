# transformers/neurological_builder.py
"""
Neurological Feature Builder
============================

First-24h Glasgow Coma Scale.

Each component (eyes, verbal, motor) and the total are resolved
first_day_gcs -> chartevents window (worst value in the first 24h).
Out-of-range values are discarded before any aggregate or charted total is
formed. The published total falls back to the sum of the three components
when no total is available.
"""

import pandas as pd

from ..config.concept_registry import GCS_CHART_ITEMS
from ..processing.normalizer import normalize_series
from .base_builder import LayerBuilder, available_flag, flag

# first_day_gcs column per component
DERIVED_GCS_COLUMNS = {
    'gcs_total': 'gcs_min',
    'gcs_eyes': 'gcs_eyes',
    'gcs_verbal': 'gcs_verbal',
    'gcs_motor': 'gcs_motor',
}

GCS_COMPONENTS = ['gcs_eyes', 'gcs_verbal', 'gcs_motor']


def classify_gcs(total) -> str:
    """GCS severity band: severe (<=8), moderate (9-12), mild (13-14), normal (15)."""
    if total is None or pd.isna(total):
        return 'unknown'
    if total <= 8:
        return 'severe'
    if total <= 12:
        return 'moderate'
    if total <= 14:
        return 'mild'
    return 'normal'


class NeurologicalBuilder(LayerBuilder):
    """Build first-24h GCS features."""

    NAME = 'neurological'

    OUTPUT_COLUMNS = [
        'gcs_total_first_24h',
        'gcs_total_first_24h_min',
        'gcs_eyes_first_24h',
        'gcs_verbal_first_24h',
        'gcs_motor_first_24h',
        'gcs_unable_to_assess_flag',
        'severe_gcs_depression_flag',
        'moderate_gcs_flag',
        'mild_gcs_flag',
        'any_neuro_impairment_flag',
        'severe_motor_response_flag',
        'severe_verbal_response_flag',
        'no_eye_opening_flag',
        'gcs_total_available_flag',
        'gcs_eyes_available_flag',
        'gcs_verbal_available_flag',
        'gcs_motor_available_flag',
        'gcs_complete_assessment_flag',
    ]

    def chart_gcs(self) -> pd.DataFrame:
        """
        Worst charted GCS per stay in the first 24h.

        Returns:
            DataFrame indexed by index_stay_id with one column per component
            plus gcs_total, the lowest sum over charttimes where all three
            components were charted together
        """
        window = self.first_day_window()
        result = pd.DataFrame(index=self.index)
        itemids = [item for items in GCS_CHART_ITEMS.values() for item in items]
        events = self.chart_events(itemids)

        per_component = {}
        for component, items in GCS_CHART_ITEMS.items():
            rows = events[events['itemid'].isin(items)]
            selected = window.select_instant(rows, match='stay_or_admission')
            if not selected.empty:
                values = normalize_series(selected['valuenum'], component)
                selected = selected.assign(_value=values, _component=component)
                selected = selected[selected['_value'].notna()]
                if not selected.empty:
                    per_component[component] = selected
            aggregates = window.aggregate(rows, component, match='stay_or_admission')
            result[component] = aggregates['min']

        result['gcs_total'] = float('nan')
        if len(per_component) == len(GCS_COMPONENTS):
            stacked = pd.concat(per_component.values(), ignore_index=True)
            by_time = stacked.pivot_table(
                index=['index_stay_id', 'charttime'], columns='_component',
                values='_value', aggfunc='min',
            ).reindex(columns=GCS_COMPONENTS).dropna()
            if not by_time.empty:
                totals = by_time.sum(axis=1)
                totals = totals[totals.between(3, 15)]
                worst = totals.groupby(level='index_stay_id').min()
                result['gcs_total'] = worst.reindex(self.index).astype(float)

        return result

    def build_features(self) -> pd.DataFrame:
        derived = self.source.table('first_day_gcs')
        chart = self.chart_gcs()
        features = pd.DataFrame(index=self.index)

        for component, derived_column in DERIVED_GCS_COLUMNS.items():
            output = 'gcs_total_first_24h_min' if component == 'gcs_total' else f'{component}_first_24h'
            result = self.resolve(
                f'{component}_first_24h_min',
                {
                    'first_day_gcs': self.stay_values(derived, derived_column),
                    'chartevents_window': chart[component],
                },
                output_name=output,
            )
            features[output] = result.values

        components = features[[f'{c}_first_24h' for c in GCS_COMPONENTS]]
        component_sum = components.sum(axis=1, min_count=len(GCS_COMPONENTS))
        total = features['gcs_total_first_24h_min'].combine_first(component_sum)
        features['gcs_total_first_24h'] = total

        unable = self.stay_values(derived, 'gcs_unable', how='max')
        features['gcs_unable_to_assess_flag'] = flag(unable == 1)

        features['severe_gcs_depression_flag'] = flag(total <= 8)
        features['moderate_gcs_flag'] = flag(total.between(9, 12))
        features['mild_gcs_flag'] = flag(total.between(13, 14))
        features['any_neuro_impairment_flag'] = flag(total < 15)
        features['severe_motor_response_flag'] = flag(features['gcs_motor_first_24h'] <= 2)
        features['severe_verbal_response_flag'] = flag(features['gcs_verbal_first_24h'] <= 2)
        features['no_eye_opening_flag'] = flag(features['gcs_eyes_first_24h'] == 1)

        features['gcs_total_available_flag'] = available_flag(total)
        for component in GCS_COMPONENTS:
            features[f'{component}_available_flag'] = available_flag(features[f'{component}_first_24h'])
        features['gcs_complete_assessment_flag'] = flag(
            components.notna().all(axis=1) & (features['gcs_unable_to_assess_flag'] == 0)
        )

        self.stats['gcs_severity'] = total.map(classify_gcs).value_counts().to_dict()
        return features
