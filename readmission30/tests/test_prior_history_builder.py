# tests/test_prior_history_builder.py
"""Tests for PriorHistoryBuilder."""

import pandas as pd
import pytest


class TestClassifyAdmissionFrequency:
    @pytest.mark.parametrize('prior, category', [
        (0, 'First_Time'), (1, 'Occasional'), (2, 'Occasional'), (3, 'Frequent_Flyer'),
        (None, 'First_Time'),
    ])
    def test_categories(self, prior, category):
        from readmission30.transformers.prior_history_builder import classify_admission_frequency
        assert classify_admission_frequency(prior) == category


class TestPriorHistoryBuilder:
    @pytest.fixture
    def result(self, cohort, source, run_timestamp):
        from readmission30.transformers.prior_history_builder import PriorHistoryBuilder
        return PriorHistoryBuilder(cohort, source, run_timestamp=run_timestamp).build()

    @pytest.fixture
    def features(self, result):
        return result.features.set_index('index_stay_id')

    def test_prior_admission_lookback(self, features):
        """hadm 99 was admitted ~27 days before the index admission."""
        assert features.loc[1000, 'prior_admissions_12m'] == 1
        assert features.loc[1000, 'days_since_last_discharge'] == 22
        assert features.loc[1000, 'recent_readmission_flag_7d'] == 0
        assert features.loc[1000, 'recent_readmission_flag_30d'] == 1
        assert features.loc[1000, 'admission_frequency_category'] == 'Occasional'

    def test_prior_icu_stays(self, features):
        assert features.loc[1000, 'prior_icu_stays_12m'] == 1
        assert features.loc[5001, 'prior_icu_stays_12m'] == 1
        assert features.loc[2000, 'prior_icu_stays_12m'] == 0

    def test_first_admission(self, features):
        assert features.loc[2000, 'prior_admissions_12m'] == 0
        assert pd.isna(features.loc[2000, 'days_since_last_discharge'])
        assert features.loc[2000, 'admission_frequency_category'] == 'First_Time'
        assert features.loc[6000, 'prior_admissions_12m'] == 0

    def test_later_admission_never_prior(self, features):
        assert features.loc[5001, 'prior_admissions_12m'] == 1
        assert features.loc[5001, 'days_since_last_discharge'] == 8

    def test_hemodynamics_trusted(self, features):
        assert features.loc[1000, 'mbp_first_24h_min'] == 60.0
        assert pd.isna(features.loc[1000, 'lactate_first_24h_max'])
        assert features.loc[1000, 'urine_output_first_24h_ml'] == 1200.0
        assert features.loc[1000, 'urine_output_rate_ml_per_kg_hr'] == pytest.approx(0.625)
        assert features.loc[1000, 'oliguria_flag'] == 0
        assert features.loc[1000, 'shock_flag'] == 0

    def test_hemodynamics_fallback(self, features):
        assert features.loc[2000, 'mbp_first_24h_min'] == 62.0
        assert features.loc[2000, 'mbp_first_24h_mean'] == 66.0
        assert features.loc[2000, 'lactate_first_24h_max'] == 5.0
        assert features.loc[2000, 'elevated_lactate_flag'] == 1

    def test_urine_rate_uses_resolved_weight(self, features):
        """The implausible 900 kg first_day_weight is skipped; charted 154 lb is used."""
        assert features.loc[2000, 'urine_output_rate_ml_per_kg_hr'] == pytest.approx(0.3579, abs=1e-4)
        assert features.loc[2000, 'oliguria_flag'] == 1

    def test_shock_needs_map_and_lactate(self, features):
        assert features.loc[2000, 'shock_flag'] == 1

    def test_missing_urine(self, features):
        assert pd.isna(features.loc[5001, 'urine_output_rate_ml_per_kg_hr'])
        assert features.loc[5001, 'oliguria_flag'] == 0
        assert features.loc[5001, 'urine_rate_available_flag'] == 0

    def test_weight_not_logged(self, result):
        assert 'weight_kg' not in set(result.provenance['concept'])
