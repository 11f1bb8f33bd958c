# transformers/prior_history_builder.py
"""
Prior History & Hemodynamics Feature Builder
============================================

Prior utilization in trailing lookback windows, plus first-24h
hemodynamic markers (MAP, lactate, urine output).

Lookbacks end strictly before the index anchor, and the index admission
and index ICU stay never count as "prior".

MAP, lactate and weight are resolved through the same providers the
vitals, labs and anthropometry layers use, read straight from the source.
"""

import numpy as np
import pandas as pd

from .anthropometry_builder import weight_candidates
from .base_builder import LayerBuilder, available_flag, flag
from .labs_builder import lab_candidates
from .vitals_builder import chart_vital_aggregates, vital_candidates

SHOCK_MAP_THRESHOLD = 65
SHOCK_LACTATE_THRESHOLD = 2
ELEVATED_LACTATE_THRESHOLD = 4
OLIGURIA_THRESHOLD = 0.5  # mL/kg/h


def classify_admission_frequency(prior_admissions) -> str:
    """Frequent_Flyer (>=3 prior admissions), Occasional (1-2) or First_Time."""
    if prior_admissions is None or pd.isna(prior_admissions) or prior_admissions < 1:
        return 'First_Time'
    if prior_admissions >= 3:
        return 'Frequent_Flyer'
    return 'Occasional'


class PriorHistoryBuilder(LayerBuilder):
    """Build prior-utilization and hemodynamic features."""

    NAME = 'prior_history'

    OUTPUT_COLUMNS = [
        'prior_admissions_12m',
        'prior_icu_stays_12m',
        'days_since_last_discharge',
        'recent_readmission_flag_7d',
        'recent_readmission_flag_30d',
        'admission_frequency_category',
        'mbp_first_24h_min',
        'mbp_first_24h_mean',
        'lactate_first_24h_max',
        'elevated_lactate_flag',
        'urine_output_first_24h_ml',
        'urine_output_rate_ml_per_kg_hr',
        'oliguria_flag',
        'shock_flag',
        'mbp_available_flag',
        'lactate_available_flag',
        'urine_output_available_flag',
        'urine_rate_available_flag',
    ]

    # -------------------------------------------------------------------------
    # Prior utilization
    # -------------------------------------------------------------------------

    def _index_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'subject_id': self.keys['subject_id'].array,
            'index_hadm_id': self.keys['hadm_id'].array,
            'index_stay_id': self.keys['index_stay_id'].array,
            'index_admittime': pd.to_datetime(self.cohort['admittime'], errors='coerce').array,
            'index_intime': pd.to_datetime(self.cohort['index_icu_intime'], errors='coerce').array,
        })

    def prior_admissions(self) -> pd.DataFrame:
        """
        Other admissions of the same subject before the index admission.

        Returns:
            DataFrame indexed by index_stay_id with prior_admissions_12m,
            days_since_last_discharge and the recent readmission flags
        """
        lookbacks = self.window_config.lookback_days
        index = self._index_frame()
        admissions = self.source.table('admissions')[['subject_id', 'hadm_id', 'admittime', 'dischtime']]

        prior = index.merge(admissions, on='subject_id', how='inner')
        before = (prior['admittime'] < prior['index_admittime']) & (prior['hadm_id'] != prior['index_hadm_id'])
        prior = prior[before.fillna(False).astype(bool)]
        elapsed = prior['index_admittime'] - prior['admittime']

        def within(days: int) -> pd.Series:
            return elapsed <= pd.Timedelta(days=days)

        grouped_12m = prior[within(lookbacks['prior_12m'])].groupby('index_stay_id')['hadm_id'].nunique()
        last_discharge = prior.groupby('index_stay_id')['dischtime'].max()
        recent_7d = prior[within(lookbacks['recent_7d'])].groupby('index_stay_id').size()
        recent_30d = prior[within(lookbacks['recent_30d'])].groupby('index_stay_id').size()

        admit_dates = pd.Series(index['index_admittime'].to_numpy(), index=self.index).dt.normalize()
        last_dates = last_discharge.reindex(self.index).dt.normalize()
        days_since = (admit_dates - last_dates).dt.days

        result = pd.DataFrame(index=self.index)
        result['prior_admissions_12m'] = grouped_12m.reindex(self.index).fillna(0).astype('int64')
        result['days_since_last_discharge'] = days_since.astype('Int64')
        result['recent_readmission_flag_7d'] = flag(recent_7d.reindex(self.index) > 0)
        result['recent_readmission_flag_30d'] = flag(recent_30d.reindex(self.index) > 0)
        return result

    def prior_icu_stays(self) -> pd.Series:
        """Distinct ICU stays on other admissions in the 12 months before index intime."""
        lookback = pd.Timedelta(days=self.window_config.lookback_days['prior_12m'])
        index = self._index_frame()
        stays = self.source.table('icustays')[['subject_id', 'hadm_id', 'stay_id', 'intime']]

        prior = index.merge(stays, on='subject_id', how='inner')
        keep = (
            (prior['intime'] < prior['index_intime'])
            & (prior['intime'] >= prior['index_intime'] - lookback)
            & (prior['stay_id'] != prior['index_stay_id'])
            & (prior['hadm_id'].fillna(-1) != prior['index_hadm_id'].fillna(-1))
        )
        prior = prior[keep.fillna(False).astype(bool)]
        counts = prior.groupby('index_stay_id')['stay_id'].nunique()
        return counts.reindex(self.index).fillna(0).astype('int64')

    # -------------------------------------------------------------------------
    # Hemodynamics
    # -------------------------------------------------------------------------

    def hemodynamics(self) -> pd.DataFrame:
        result = pd.DataFrame(index=self.index)

        chart_mbp = chart_vital_aggregates(self, 'mbp')
        for agg in ('min', 'mean'):
            column = f'mbp_first_24h_{agg}'
            resolved = self.resolve(column, vital_candidates(self, 'mbp', agg, chart_mbp))
            result[column] = resolved.values.round(2)

        lactate = self.resolve('lactate_first_24h_max', lab_candidates(self, 'lactate', 'max'))
        result['lactate_first_24h_max'] = lactate.values

        urine = self.resolve('urine_output_first_24h_ml', {
            'first_day_urine_output': self.stay_values(
                self.source.table('first_day_urine_output'), 'urineoutput'
            ),
        })
        result['urine_output_first_24h_ml'] = urine.values

        weight = self.resolve('weight_kg', weight_candidates(self), record=False).values
        rate = result['urine_output_first_24h_ml'] / (weight.where(weight > 0) * 24.0)
        result['urine_output_rate_ml_per_kg_hr'] = rate

        return result

    def build_features(self) -> pd.DataFrame:
        features = self.prior_admissions()
        features['prior_icu_stays_12m'] = self.prior_icu_stays()
        features['admission_frequency_category'] = (
            features['prior_admissions_12m'].map(classify_admission_frequency)
        )

        hemo = self.hemodynamics()
        for column in hemo.columns:
            features[column] = hemo[column]

        rate = features['urine_output_rate_ml_per_kg_hr']
        features['elevated_lactate_flag'] = flag(features['lactate_first_24h_max'] > ELEVATED_LACTATE_THRESHOLD)
        features['oliguria_flag'] = flag(rate < OLIGURIA_THRESHOLD)
        features['shock_flag'] = flag(
            (features['mbp_first_24h_min'] < SHOCK_MAP_THRESHOLD)
            & (features['lactate_first_24h_max'] > SHOCK_LACTATE_THRESHOLD)
        )
        features['mbp_available_flag'] = available_flag(features['mbp_first_24h_min'])
        features['lactate_available_flag'] = available_flag(features['lactate_first_24h_max'])
        features['urine_output_available_flag'] = available_flag(features['urine_output_first_24h_ml'])
        features['urine_rate_available_flag'] = available_flag(rate)

        self.stats['n_with_prior_admission'] = int((features['prior_admissions_12m'] > 0).sum())
        self.stats['mean_prior_admissions_12m'] = float(np.round(features['prior_admissions_12m'].mean(), 3)) \
            if len(features) else None
        return features
