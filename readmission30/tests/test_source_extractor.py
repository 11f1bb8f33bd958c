# tests/test_source_extractor.py
"""Tests for SourceStore table loading and coercion."""

import pandas as pd
import pytest

from readmission30.extractors.source_extractor import (
    REQUIRED_TABLES,
    TABLE_SCHEMAS,
    SourceStore,
    SourceTableError,
)


class TestInMemorySource:
    def test_required_tables(self):
        assert set(REQUIRED_TABLES) == {'patients', 'admissions', 'icustays'}

    def test_ids_coerced_to_nullable_int(self, source):
        icustays = source.table('icustays')
        assert str(icustays['stay_id'].dtype) == 'Int64'
        assert str(icustays['subject_id'].dtype) == 'Int64'

    def test_timestamps_parsed(self, tables):
        tables['admissions']['admittime'] = tables['admissions']['admittime'].astype(str)
        store = SourceStore(tables)
        assert pd.api.types.is_datetime64_any_dtype(store.table('admissions')['admittime'])

    def test_numerics_coerced(self, tables):
        tables['first_day_height'] = pd.DataFrame({
            'subject_id': [1, 2], 'stay_id': [1000, 2000], 'height': ['175', 'n/a'],
        })
        heights = SourceStore(tables).table('first_day_height')['height']
        assert heights.iloc[0] == 175.0
        assert pd.isna(heights.iloc[1])

    def test_absent_optional_table_is_empty(self, source):
        table = source.table('kdigo_stages')
        assert table.empty
        assert list(table.columns) == TABLE_SCHEMAS['kdigo_stages']['columns']

    def test_missing_optional_column_added(self, tables):
        tables['first_day_vitalsign'] = tables['first_day_vitalsign'][['subject_id', 'stay_id', 'heart_rate_mean']]
        table = SourceStore(tables).table('first_day_vitalsign')
        assert 'spo2_min' in table.columns
        assert table['spo2_min'].isna().all()

    def test_missing_required_table(self, tables):
        del tables['icustays']
        store = SourceStore(tables)
        with pytest.raises(SourceTableError):
            store.validate_required()

    def test_required_table_missing_column(self, tables):
        tables['patients'] = tables['patients'].drop(columns=['anchor_age'])
        with pytest.raises(SourceTableError):
            SourceStore(tables).table('patients')

    def test_undeclared_table(self, source):
        with pytest.raises(SourceTableError):
            source.table('noteevents')

    def test_tables_cached(self, source):
        assert source.table('patients') is source.table('patients')

    def test_caller_frames_untouched(self, tables):
        SourceStore(tables).table('icustays')
        assert str(tables['icustays']['stay_id'].dtype) == 'int64'

    def test_load_all(self, source):
        loaded = source.load_all()
        assert set(loaded) == set(TABLE_SCHEMAS)


class TestDirectorySource:
    def test_reads_csv_and_parquet(self, tmp_path, tables):
        tables['patients'].to_csv(tmp_path / 'patients.csv', index=False)
        tables['icustays'].to_parquet(tmp_path / 'icustays.parquet', index=False)
        store = SourceStore(tmp_path)
        assert len(store.table('patients')) == 6
        assert len(store.table('icustays')) == 11
        assert pd.api.types.is_datetime64_any_dtype(store.table('icustays')['intime'])

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SourceTableError):
            SourceStore(tmp_path / 'does_not_exist')
