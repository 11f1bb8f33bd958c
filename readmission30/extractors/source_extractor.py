"""
Source Table Extractor
======================

Read-only access to the clinical source tables. Each table is one file in
the source directory (<name>.parquet, <name>.csv or <name>.csv.gz), or one
DataFrame in an in-memory mapping.

Tables are parsed once and cached. Identifier columns are coerced to
nullable integers, timestamps with pd.to_datetime(errors='coerce') and
declared numeric columns with pd.to_numeric(errors='coerce').
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd

from ..config.concept_registry import (
    VITAL_STEMS,
    FIRST_DAY_LAB_AGGREGATES,
    CHARLSON_COMPONENTS,
)

logger = logging.getLogger(__name__)


class SourceTableError(KeyError):
    """A required source table is missing or lacks required columns."""


ID_COLUMNS = {'subject_id', 'hadm_id', 'stay_id', 'itemid'}

_INTERVAL_STAY = ['stay_id', 'starttime', 'endtime']


def _vitalsign_columns() -> List[str]:
    return [f'{stem}_{agg}' for stem in VITAL_STEMS for agg in ('min', 'max', 'mean')]


def _lab_columns() -> List[str]:
    return [f'{analyte}_{agg}' for analyte, aggs in FIRST_DAY_LAB_AGGREGATES.items() for agg in aggs]


def _charlson_columns() -> List[str]:
    return ['subject_id', 'hadm_id'] + CHARLSON_COMPONENTS + ['charlson_comorbidity_index']


# table -> columns, datetime columns, numeric columns, required flag
TABLE_SCHEMAS: Dict[str, Dict] = {
    # Core
    'patients': {
        'columns': ['subject_id', 'gender', 'anchor_age', 'anchor_year_group'],
        'datetimes': [],
        'numerics': ['anchor_age'],
        'required': True,
    },
    'admissions': {
        'columns': [
            'subject_id', 'hadm_id', 'admittime', 'dischtime', 'deathtime',
            'admission_type', 'admission_location', 'discharge_location',
            'insurance', 'race', 'hospital_expire_flag',
        ],
        'datetimes': ['admittime', 'dischtime', 'deathtime'],
        'numerics': ['hospital_expire_flag'],
        'required': True,
    },
    'icustays': {
        'columns': [
            'subject_id', 'hadm_id', 'stay_id', 'first_careunit',
            'last_careunit', 'intime', 'outtime',
        ],
        'datetimes': ['intime', 'outtime'],
        'numerics': [],
        'required': True,
    },

    # Raw event streams
    'chartevents': {
        'columns': ['subject_id', 'hadm_id', 'stay_id', 'itemid', 'charttime', 'valuenum', 'valueuom'],
        'datetimes': ['charttime'],
        'numerics': ['valuenum'],
    },
    'labevents': {
        'columns': ['subject_id', 'hadm_id', 'itemid', 'charttime', 'valuenum', 'valueuom'],
        'datetimes': ['charttime'],
        'numerics': ['valuenum'],
    },
    'omr': {
        'columns': ['subject_id', 'chartdate', 'result_name', 'result_value'],
        'datetimes': ['chartdate'],
        'numerics': [],
    },
    'inputevents': {
        'columns': ['subject_id', 'hadm_id', 'stay_id', 'starttime', 'patientweight'],
        'datetimes': ['starttime'],
        'numerics': ['patientweight'],
    },
    'procedureevents': {
        'columns': ['subject_id', 'hadm_id', 'stay_id', 'starttime', 'patientweight'],
        'datetimes': ['starttime'],
        'numerics': ['patientweight'],
    },
    'diagnoses_icd': {
        'columns': ['subject_id', 'hadm_id', 'icd_code', 'icd_version'],
        'datetimes': [],
        'numerics': ['icd_version'],
    },

    # Trusted derived aggregates
    'first_day_height': {
        'columns': ['subject_id', 'stay_id', 'height'],
        'datetimes': [],
        'numerics': ['height'],
    },
    'first_day_weight': {
        'columns': ['subject_id', 'stay_id', 'weight'],
        'datetimes': [],
        'numerics': ['weight'],
    },
    'first_day_vitalsign': {
        'columns': ['subject_id', 'stay_id'] + _vitalsign_columns(),
        'datetimes': [],
        'numerics': _vitalsign_columns(),
    },
    'first_day_lab': {
        'columns': ['subject_id', 'stay_id'] + _lab_columns(),
        'datetimes': [],
        'numerics': _lab_columns(),
    },
    'first_day_gcs': {
        'columns': ['subject_id', 'stay_id', 'gcs_min', 'gcs_motor', 'gcs_verbal', 'gcs_eyes', 'gcs_unable'],
        'datetimes': [],
        'numerics': ['gcs_min', 'gcs_motor', 'gcs_verbal', 'gcs_eyes', 'gcs_unable'],
    },
    'first_day_urine_output': {
        'columns': ['subject_id', 'stay_id', 'urineoutput'],
        'datetimes': [],
        'numerics': ['urineoutput'],
    },
    'charlson': {
        'columns': _charlson_columns(),
        'datetimes': [],
        'numerics': CHARLSON_COMPONENTS + ['charlson_comorbidity_index'],
    },
    'charlson_local': {
        'columns': _charlson_columns(),
        'datetimes': [],
        'numerics': CHARLSON_COMPONENTS + ['charlson_comorbidity_index'],
    },

    # Treatments
    'acei': {
        'columns': ['subject_id', 'hadm_id', 'starttime', 'stoptime'],
        'datetimes': ['starttime', 'stoptime'],
        'numerics': [],
    },
    'arb': {
        'columns': ['subject_id', 'hadm_id', 'starttime', 'stoptime'],
        'datetimes': ['starttime', 'stoptime'],
        'numerics': [],
    },
    'antibiotic': {
        'columns': ['subject_id', 'hadm_id', 'stay_id', 'starttime', 'stoptime'],
        'datetimes': ['starttime', 'stoptime'],
        'numerics': [],
    },
    'vasoactive_agent': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'norepinephrine': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'dopamine': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'epinephrine': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'dobutamine': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'milrinone': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'ventilation': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'invasive_line': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'neuroblock': {'columns': _INTERVAL_STAY, 'datetimes': ['starttime', 'endtime'], 'numerics': []},
    'rrt': {
        'columns': ['stay_id', 'charttime', 'dialysis_present', 'dialysis_active'],
        'datetimes': ['charttime'],
        'numerics': ['dialysis_present', 'dialysis_active'],
    },
    'crrt': {
        'columns': ['stay_id', 'charttime'],
        'datetimes': ['charttime'],
        'numerics': [],
    },

    # Severity
    'sofa': {
        'columns': [
            'stay_id', 'endtime', 'sofa_24hours', 'respiration_24hours',
            'coagulation_24hours', 'liver_24hours', 'cardiovascular_24hours',
            'cns_24hours', 'renal_24hours',
        ],
        'datetimes': ['endtime'],
        'numerics': [
            'sofa_24hours', 'respiration_24hours', 'coagulation_24hours',
            'liver_24hours', 'cardiovascular_24hours', 'cns_24hours', 'renal_24hours',
        ],
    },
    'apsiii': {'columns': ['stay_id', 'apsiii'], 'datetimes': [], 'numerics': ['apsiii']},
    'sapsii': {'columns': ['stay_id', 'sapsii'], 'datetimes': [], 'numerics': ['sapsii']},
    'lods': {'columns': ['stay_id', 'lods'], 'datetimes': [], 'numerics': ['lods']},
    'oasis': {'columns': ['stay_id', 'oasis'], 'datetimes': [], 'numerics': ['oasis']},
    'kdigo_stages': {
        'columns': ['stay_id', 'charttime', 'aki_stage_smoothed'],
        'datetimes': ['charttime'],
        'numerics': ['aki_stage_smoothed'],
    },
    'sepsis3': {'columns': ['stay_id', 'sepsis3'], 'datetimes': [], 'numerics': []},
    'sirs': {'columns': ['stay_id', 'sirs'], 'datetimes': [], 'numerics': ['sirs']},
    'suspicion_of_infection': {
        'columns': ['stay_id', 'suspected_infection_time'],
        'datetimes': ['suspected_infection_time'],
        'numerics': [],
    },
}

REQUIRED_TABLES = [name for name, schema in TABLE_SCHEMAS.items() if schema.get('required')]


class SourceStore:
    """Read-only, cached view over the source tables."""

    FILE_SUFFIXES = ['.parquet', '.csv', '.csv.gz']

    def __init__(self, source: Union[str, Path, Dict[str, pd.DataFrame]]):
        """
        Initialize store.

        Args:
            source: Directory with one file per table, or a mapping of
                table name -> DataFrame
        """
        if isinstance(source, dict):
            self.source_dir = None
            self._frames = dict(source)
        else:
            self.source_dir = Path(source)
            if not self.source_dir.is_dir():
                raise SourceTableError(f"Source directory not found: {self.source_dir}")
            self._frames = {}
        self._cache: Dict[str, pd.DataFrame] = {}

    def _locate(self, name: str):
        for suffix in self.FILE_SUFFIXES:
            path = self.source_dir / f"{name}{suffix}"
            if path.exists():
                return path
        return None

    def _read_raw(self, name: str):
        if self.source_dir is None:
            frame = self._frames.get(name)
            return None if frame is None else frame.copy()

        path = self._locate(name)
        if path is None:
            return None
        logger.info(f"Reading {path}")
        if path.suffix == '.parquet':
            return pd.read_parquet(path)
        return pd.read_csv(path, low_memory=False)

    def _preprocess(self, name: str, df: pd.DataFrame) -> pd.DataFrame:
        """Coerce ids, timestamps and numerics; add missing optional columns."""
        schema = TABLE_SCHEMAS[name]
        missing = [c for c in schema['columns'] if c not in df.columns]
        if missing:
            if schema.get('required'):
                raise SourceTableError(f"Table '{name}' lacks required columns: {missing}")
            logger.warning(f"Table '{name}' lacks columns {missing}; treated as null")
            for col in missing:
                df[col] = None

        for col in schema['columns']:
            if col in ID_COLUMNS:
                df[col] = pd.to_numeric(df[col], errors='coerce').astype('Int64')
        for col in schema['datetimes']:
            df[col] = pd.to_datetime(df[col], errors='coerce')
        for col in schema['numerics']:
            df[col] = pd.to_numeric(df[col], errors='coerce').astype(float)

        return df

    def table(self, name: str) -> pd.DataFrame:
        """
        Get a parsed source table.

        Args:
            name: Declared table name

        Returns:
            Parsed DataFrame; an absent optional table is an empty frame
            with its declared columns

        Raises:
            SourceTableError: required table missing or malformed
        """
        if name in self._cache:
            return self._cache[name]
        if name not in TABLE_SCHEMAS:
            raise SourceTableError(f"Undeclared source table: {name}")

        df = self._read_raw(name)
        if df is None:
            if TABLE_SCHEMAS[name].get('required'):
                raise SourceTableError(f"Required source table missing: {name}")
            logger.warning(f"Optional table '{name}' not found; its concepts resolve as absent")
            df = pd.DataFrame(columns=TABLE_SCHEMAS[name]['columns'])

        df = self._preprocess(name, df)
        self._cache[name] = df
        logger.info(f"Loaded {name}: {len(df):,} rows")
        return df

    def validate_required(self):
        """Load every required table, raising SourceTableError on problems."""
        for name in REQUIRED_TABLES:
            self.table(name)

    def load_all(self) -> Dict[str, pd.DataFrame]:
        """Parse every declared table (used before fanning out to workers)."""
        return {name: self.table(name) for name in TABLE_SCHEMAS}
