# transformers/medications_builder.py
"""
Medications & Interventions Feature Builder
===========================================

Binary exposure flags for the first 24h of the index ICU stay.

Interval tables use the strict overlap rule against [intime, intime + 24h);
RRT and CRRT are charted instants. Rows with a null start or stop are
ignored.
"""

import pandas as pd

from .base_builder import LayerBuilder, flag

# Admission-level interval tables: flag -> table
ADMISSION_INTERVAL_TABLES = {
    'acei_24h_flag': 'acei',
    'arb_24h_flag': 'arb',
}

# Stay-level interval tables: flag -> table
STAY_INTERVAL_TABLES = {
    'vasopressor_24h_flag': 'vasoactive_agent',
    'norepinephrine_24h_flag': 'norepinephrine',
    'dopamine_24h_flag': 'dopamine',
    'epinephrine_24h_flag': 'epinephrine',
    'dobutamine_24h_flag': 'dobutamine',
    'milrinone_24h_flag': 'milrinone',
    'mechanical_ventilation_24h_flag': 'ventilation',
    'invasive_line_24h_flag': 'invasive_line',
    'neuroblock_24h_flag': 'neuroblock',
}

MEDICATION_INTENSITY_FLAGS = [
    'acei_24h_flag', 'arb_24h_flag', 'vasopressor_24h_flag', 'antibiotic_24h_flag',
]

TREATMENT_INTENSITY_FLAGS = [
    'mechanical_ventilation_24h_flag', 'vasopressor_24h_flag',
    'rrt_24h_flag', 'invasive_line_24h_flag',
]


class MedicationsBuilder(LayerBuilder):
    """Build first-24h medication and organ-support flags."""

    NAME = 'medications'

    OUTPUT_COLUMNS = [
        'acei_24h_flag',
        'arb_24h_flag',
        'chronic_cardio_med_flag',
        'antibiotic_24h_flag',
        'vasopressor_24h_flag',
        'norepinephrine_24h_flag',
        'dopamine_24h_flag',
        'epinephrine_24h_flag',
        'dobutamine_24h_flag',
        'milrinone_24h_flag',
        'any_inotrope_24h_flag',
        'mechanical_ventilation_24h_flag',
        'rrt_24h_flag',
        'crrt_24h_flag',
        'invasive_line_24h_flag',
        'neuroblock_24h_flag',
        'medication_intensity_score_24h',
        'treatment_intensity_score_24h',
        'high_acuity_24h_flag',
        'medications_data_available',
    ]

    def antibiotic_flag(self, window) -> pd.Series:
        """Antibiotics on the index admission, unassigned or on the index stay."""
        selected = window.select_intervals(
            self.source.table('antibiotic'),
            start_column='starttime', end_column='stoptime', match='admission',
        )
        if not selected.empty:
            same_stay = selected['stay_id'].isna() | (selected['stay_id'] == selected['index_stay_id'])
            selected = selected[same_stay.fillna(False).astype(bool)]
        return window.flag_any(selected)

    def rrt_flag(self, window) -> pd.Series:
        """Dialysis charted present or active in the window."""
        rrt = self.source.table('rrt')
        active = (rrt['dialysis_present'] == 1) | (rrt['dialysis_active'] == 1)
        selected = window.select_instant(rrt[active.fillna(False).astype(bool)], match='stay')
        return window.flag_any(selected)

    def build_features(self) -> pd.DataFrame:
        window = self.first_day_window()
        features = pd.DataFrame(index=self.index)
        counts = {}

        for column, table in ADMISSION_INTERVAL_TABLES.items():
            selected = window.select_intervals(
                self.source.table(table),
                start_column='starttime', end_column='stoptime', match='admission',
            )
            features[column] = window.flag_any(selected)

        for column, table in STAY_INTERVAL_TABLES.items():
            selected = window.select_intervals(
                self.source.table(table),
                start_column='starttime', end_column='endtime', match='stay',
            )
            features[column] = window.flag_any(selected)

        features['antibiotic_24h_flag'] = self.antibiotic_flag(window)
        features['rrt_24h_flag'] = self.rrt_flag(window)
        features['crrt_24h_flag'] = window.flag_any(
            window.select_instant(self.source.table('crrt'), match='stay')
        )

        features['chronic_cardio_med_flag'] = flag(
            (features['acei_24h_flag'] == 1) | (features['arb_24h_flag'] == 1)
        )
        features['any_inotrope_24h_flag'] = flag(
            (features['dobutamine_24h_flag'] == 1) | (features['milrinone_24h_flag'] == 1)
        )
        features['medication_intensity_score_24h'] = features[MEDICATION_INTENSITY_FLAGS].sum(axis=1)
        features['treatment_intensity_score_24h'] = features[TREATMENT_INTENSITY_FLAGS].sum(axis=1)
        features['high_acuity_24h_flag'] = flag(
            (features['mechanical_ventilation_24h_flag'] == 1) & (features['vasopressor_24h_flag'] == 1)
        )
        features['medications_data_available'] = 1

        for column in self.OUTPUT_COLUMNS:
            if column.endswith('_flag'):
                counts[column] = int(features[column].sum())
        self.stats['exposure_counts'] = counts
        return features
