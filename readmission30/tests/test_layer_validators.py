# tests/test_layer_validators.py
"""Tests for the per-stage QC rules."""

import pandas as pd
import pytest


def fatal(findings):
    return [f for f in findings if f.is_fatal_failure]


def failed(findings, category):
    return [f for f in findings if not f.passed and f.category == category]


class TestHelpers:
    def test_range_columns(self):
        from readmission30.validation.layer_validators import range_columns
        ranges = range_columns('vitals', ['hr_first_24h_mean', 'shock_flag_map_lt_65'])
        assert ranges == {'hr_first_24h_mean': 'heart_rate'}

    def test_range_columns_layer_extras(self):
        from readmission30.validation.layer_validators import range_columns
        ranges = range_columns('neurological', ['gcs_total_first_24h', 'gcs_total_first_24h_min'])
        assert ranges == {'gcs_total_first_24h': 'gcs_total', 'gcs_total_first_24h_min': 'gcs_total'}

    def test_min_max_pairs(self):
        from readmission30.validation.layer_validators import min_max_pairs
        columns = ['a_min', 'a_max', 'b_min', 'c_max']
        assert min_max_pairs(columns) == [('a_min', 'a_max')]


class TestConfigAndCohort:
    def test_config_consistent(self):
        from readmission30.validation.layer_validators import validate_config
        assert all(f.passed for f in validate_config())

    def test_map_entry_with_own_weight_is_fatal(self):
        from readmission30.validation.layer_validators import validate_config
        comorbidity_map = {
            'dementia': {'flag': 'dementia_flag', 'charlson_component': 'dementia', 'weight': 2},
        }
        names = [f.check_name for f in fatal(validate_config(comorbidity_map))]
        assert names == ["Comorbidity map weighted only by CHARLSON_WEIGHTS"]

    def test_map_component_without_weight(self):
        from readmission30.validation.layer_validators import check_comorbidity_map
        comorbidity_map = {
            'gout': {'flag': 'gout_flag', 'charlson_component': 'gout'},
            'afib': {'flag': 'afib_flag', 'charlson_component': None},
        }
        assert check_comorbidity_map(comorbidity_map) == ["gout: no weight for component 'gout'"]

    def test_fixture_cohort_passes(self, cohort_result):
        from readmission30.validation.layer_validators import validate_cohort
        findings = validate_cohort(cohort_result.cohort, cohort_result.exclusions)
        assert fatal(findings) == []

    def test_duplicate_subject(self, cohort):
        from readmission30.validation.layer_validators import validate_cohort
        duplicated = pd.concat([cohort, cohort.iloc[[0]]], ignore_index=True)
        assert failed(validate_cohort(duplicated), 'a')

    def test_days_without_label(self, cohort):
        from readmission30.validation.layer_validators import validate_cohort
        broken = cohort.copy()
        row = broken.index[broken['readmit_30d_flag'] == 0][0]
        broken.loc[row, 'days_to_30d_readmission'] = 5
        names = [f.check_name for f in failed(validate_cohort(broken), 'd')]
        assert names == ["Days-to-event present iff label = 1"]


class TestValidateLayer:
    @pytest.fixture
    def vitals(self, cohort, source, run_timestamp):
        from readmission30.transformers.vitals_builder import VitalsBuilder
        return VitalsBuilder(cohort, source, run_timestamp=run_timestamp).build()

    def test_real_layers_have_no_fatal_findings(self, cohort, source, run_timestamp):
        from readmission30.transformers import LAYER_BUILDERS
        from readmission30.validation.layer_validators import validate_layer
        for builder in LAYER_BUILDERS:
            result = builder(cohort, source, run_timestamp=run_timestamp).build()
            findings = validate_layer(result.name, result.features, cohort, result.stats)
            assert fatal(findings) == [], result.name

    def test_range_violation(self, vitals, cohort):
        from readmission30.validation.layer_validators import validate_layer
        features = vitals.features.copy()
        features.loc[0, 'hr_first_24h_mean'] = 500.0
        names = [f.check_name for f in failed(validate_layer('vitals', features, cohort), 'c')]
        assert names == ['Range hr_first_24h_mean']

    def test_min_above_max(self, vitals, cohort):
        from readmission30.validation.layer_validators import validate_layer
        features = vitals.features.copy()
        features.loc[0, 'hr_first_24h_min'] = 200.0
        names = [f.check_name for f in failed(validate_layer('vitals', features, cohort), 'd')]
        assert names == ['hr_first_24h_min <= hr_first_24h_max']

    def test_row_count_mismatch(self, vitals, cohort):
        from readmission30.validation.layer_validators import validate_layer
        features = vitals.features.iloc[1:]
        assert failed(validate_layer('vitals', features, cohort), 'a')

    def test_provenance_mix_reported(self, vitals, cohort):
        from readmission30.validation.layer_validators import validate_layer
        findings = validate_layer('vitals', vitals.features, cohort, vitals.stats)
        mix = [f for f in findings if f.check_name == 'Provenance mix'][0]
        assert mix.category == 'info'
        assert mix.observed['hr_first_24h_mean']['trusted_derived'] == 1


class TestLabelDifference:
    def test_missing_group_skipped(self):
        from readmission30.validation.layer_validators import label_difference_finding
        values = pd.Series([1.0, 2.0, None, None])
        labels = pd.Series([0, 0, 1, 1])
        finding = label_difference_finding('labs', 'x', values, labels)
        assert finding.category == 'info'
        assert finding.passed

    def test_no_difference_warns(self):
        from readmission30.validation.layer_validators import label_difference_finding
        values = pd.Series([1.0, 1.0, 1.0, 1.0])
        labels = pd.Series([0, 0, 1, 1])
        finding = label_difference_finding('labs', 'x', values, labels)
        assert finding.category == 'e'
        assert not finding.passed
        assert finding.severity == 'warning'

    def test_difference_passes(self):
        from readmission30.validation.layer_validators import label_difference_finding
        values = pd.Series([1.0, 1.0, 5.0, 5.0])
        labels = pd.Series([0, 0, 1, 1])
        finding = label_difference_finding('labs', 'x', values, labels)
        assert finding.passed
        assert finding.observed['diff'] == 4.0


class TestSchemaAndFinal:
    def test_declared_schema_clean(self):
        from readmission30.pipeline import declared_layer_columns
        from readmission30.validation.layer_validators import validate_schema
        assert fatal(validate_schema(declared_layer_columns())) == []

    def test_duplicate_published_name(self):
        from readmission30.pipeline import declared_layer_columns
        from readmission30.validation.layer_validators import validate_schema
        layer_columns = declared_layer_columns()
        layer_columns['labs'].append('hr_first_24h_mean')
        assert failed(validate_schema(layer_columns), 'f')

    def test_missing_layer_declaration(self):
        from readmission30.pipeline import declared_layer_columns
        from readmission30.validation.layer_validators import validate_schema
        layer_columns = declared_layer_columns()
        del layer_columns['comorbidity']
        names = [f.check_name for f in failed(validate_schema(layer_columns), 'f')]
        assert names == ['All layers declared']

    def test_final_table(self, cohort, source, run_timestamp):
        from readmission30.pipeline import declared_layer_columns
        from readmission30.processing.assembler import assemble
        from readmission30.transformers import LAYER_BUILDERS
        from readmission30.validation.layer_validators import validate_final

        layer_columns = declared_layer_columns()
        results = {
            builder.NAME: builder(cohort, source, run_timestamp=run_timestamp).build()
            for builder in LAYER_BUILDERS
        }
        features = assemble(cohort, results, layer_columns).features
        findings = validate_final(features, cohort, layer_columns)
        assert fatal(findings) == []

        reordered = features[list(features.columns[::-1])]
        assert failed(validate_final(reordered, cohort, layer_columns), 'f')
