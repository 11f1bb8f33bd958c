# transformers/demographics_builder.py
"""
Demographics Feature Builder
============================

Driver layer: passes the cohort snapshot through, adds age and
length-of-stay bands, and carries the readmission label columns.
"""

from typing import Optional

import pandas as pd

from ..config.concept_registry import LABEL_COLUMNS
from .base_builder import LayerBuilder


def classify_age(age: Optional[float]) -> Optional[str]:
    """
    Age band at admission.

    Args:
        age: Age in years

    Returns:
        '18-40', '40-60', '60-80' or '80+' (None when age is missing)
    """
    if age is None or pd.isna(age):
        return None
    if age < 40:
        return '18-40'
    if age < 60:
        return '40-60'
    if age < 80:
        return '60-80'
    return '80+'


def classify_los(hospital_los_days: Optional[float]) -> str:
    """Hospital length-of-stay band: Short (<3d), Medium (<7d), Long, Unknown."""
    if hospital_los_days is None or pd.isna(hospital_los_days):
        return 'Unknown'
    if hospital_los_days < 3:
        return 'Short'
    if hospital_los_days < 7:
        return 'Medium'
    return 'Long'


class DemographicsBuilder(LayerBuilder):
    """Build demographic and admission-context features."""

    NAME = 'demographics'

    PASSTHROUGH_COLUMNS = [
        'index_icu_intime', 'index_icu_outtime',
        'index_icu_los_minutes', 'index_icu_los_hours', 'index_icu_los_days',
        'gender', 'anchor_year_group',
        'admittime', 'dischtime', 'admission_type', 'admission_location',
        'discharge_location', 'insurance', 'race',
        'first_careunit', 'last_careunit',
        'hospital_los_days', 'mortality_in_index_admission',
        'next_icu_intime_after_index',
    ]

    OUTPUT_COLUMNS = PASSTHROUGH_COLUMNS + [
        'age_at_admission',
        'age_group',
        'los_category',
    ] + LABEL_COLUMNS

    def build_features(self) -> pd.DataFrame:
        features = pd.DataFrame(index=self.index)
        for col in self.PASSTHROUGH_COLUMNS + LABEL_COLUMNS:
            features[col] = self.cohort_column(col)

        age = pd.to_numeric(self.cohort_column('anchor_age'), errors='coerce')
        features['age_at_admission'] = age.round().astype('Int64')
        features['age_group'] = age.map(classify_age)
        features['los_category'] = features['hospital_los_days'].map(classify_los)

        self.stats['n_missing_age'] = int(age.isna().sum())
        return features
