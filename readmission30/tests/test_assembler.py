# tests/test_assembler.py
"""Tests for the feature table assembler."""

import pandas as pd
import pytest


@pytest.fixture
def layer_results(cohort, source, run_timestamp):
    from readmission30.transformers import LAYER_BUILDERS
    return {
        builder.NAME: builder(cohort, source, run_timestamp=run_timestamp).build()
        for builder in LAYER_BUILDERS
    }


@pytest.fixture
def layer_columns():
    from readmission30.pipeline import declared_layer_columns
    return declared_layer_columns()


class TestSchemaHelpers:
    def test_owned_name(self):
        from readmission30.processing.assembler import owned_name
        assert owned_name('mbp_first_24h_mean', 'vitals') == 'mbp_first_24h_mean'
        assert owned_name('mbp_first_24h_mean', 'prior_history') == 'mbp_first_24h_mean_hemo'
        assert owned_name('glucose_first_24h_min', 'vitals') == 'glucose_first_24h_min_vitals'
        assert owned_name('hr_first_24h_mean', 'vitals') == 'hr_first_24h_mean'

    def test_declared_layers_have_no_duplicates(self, layer_columns):
        from readmission30.processing.assembler import find_duplicate_columns
        assert find_duplicate_columns(layer_columns) == {}

    def test_duplicate_detected(self, layer_columns):
        from readmission30.processing.assembler import find_duplicate_columns
        layer_columns['labs'] = layer_columns['labs'] + ['hr_first_24h_mean']
        assert find_duplicate_columns(layer_columns) == {'hr_first_24h_mean': ['vitals', 'labs']}

    def test_expected_schema_order(self, layer_columns):
        from readmission30.processing.assembler import expected_schema
        schema = expected_schema(layer_columns)
        assert schema[:3] == ['subject_id', 'hadm_id', 'index_stay_id']
        assert schema[-2:] == ['readmit_30d_flag', 'days_to_30d_readmission']
        assert len(schema) == len(set(schema))

    def test_unknown_layer_rejected(self, layer_columns):
        from readmission30.processing.assembler import expected_schema, SchemaViolationError
        layer_columns['extra'] = ['x']
        with pytest.raises(SchemaViolationError):
            expected_schema(layer_columns)


class TestAssemble:
    def test_one_row_per_cohort_stay(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble
        assembled = assemble(cohort, layer_results, layer_columns)
        assert len(assembled.features) == len(cohort)
        assert assembled.features['index_stay_id'].tolist() == cohort['index_stay_id'].tolist()

    def test_columns_follow_declared_schema(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble, expected_schema
        features = assemble(cohort, layer_results, layer_columns).features
        assert list(features.columns) == expected_schema(layer_columns)
        assert list(features.columns[-2:]) == ['readmit_30d_flag', 'days_to_30d_readmission']

    def test_shared_columns_suffixed(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble
        features = assemble(cohort, layer_results, layer_columns).features.set_index('index_stay_id')
        assert features.loc[2000, 'mbp_first_24h_mean'] == 66.0
        assert features.loc[2000, 'mbp_first_24h_mean_hemo'] == 66.0
        assert features.loc[2000, 'lactate_first_24h_max'] == 5.0
        assert features.loc[2000, 'lactate_first_24h_max_hemo'] == 5.0
        assert 'glucose_first_24h_mean_vitals' in features.columns
        assert 'glucose_first_24h_mean' not in features.columns

    def test_timestamp_moves_to_provenance(self, cohort, layer_results, layer_columns, run_timestamp):
        from readmission30.processing.assembler import assemble, PROVENANCE_TABLE_COLUMNS
        assembled = assemble(cohort, layer_results, layer_columns)
        assert 'feature_extraction_timestamp' not in assembled.features.columns
        assert list(assembled.provenance.columns) == PROVENANCE_TABLE_COLUMNS
        assert (assembled.provenance['feature_extraction_timestamp'] == run_timestamp).all()

    def test_provenance_uses_published_names(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble
        provenance = assemble(cohort, layer_results, layer_columns).provenance
        hemo = provenance[provenance['layer'] == 'prior_history']
        assert 'mbp_first_24h_mean_hemo' in set(hemo['concept'])
        assert 'mbp_first_24h_mean' not in set(hemo['concept'])
        vitals = provenance[provenance['layer'] == 'vitals']
        assert 'glucose_first_24h_max_vitals' in set(vitals['concept'])

    def test_duplicate_rows_rejected(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble, SchemaViolationError
        labs = layer_results['labs']
        labs.features = pd.concat([labs.features, labs.features.iloc[[0]]], ignore_index=True)
        with pytest.raises(SchemaViolationError, match='duplicate'):
            assemble(cohort, layer_results, layer_columns)

    def test_missing_layer_rejected(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble, SchemaViolationError
        del layer_results['labs']
        with pytest.raises(SchemaViolationError, match='Missing layer'):
            assemble(cohort, layer_results, layer_columns)

    def test_duplicate_declared_column_rejected(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble, SchemaViolationError
        layer_columns['labs'] = layer_columns['labs'] + ['hr_first_24h_mean']
        with pytest.raises(SchemaViolationError, match='Duplicate'):
            assemble(cohort, layer_results, layer_columns)

    def test_undeclared_column_rejected(self, cohort, layer_results, layer_columns):
        from readmission30.processing.assembler import assemble, SchemaViolationError
        layer_results['medications'].features['stray_column'] = 0
        with pytest.raises(SchemaViolationError, match='declared schema'):
            assemble(cohort, layer_results, layer_columns)
