# tests/conftest.py
"""
Shared synthetic source for the readmission30 tests.

Six subjects, anchored on 2150-01-01:

- 1: index stay 1000, readmitted to ICU 17 days after discharge (label 1);
     one earlier admission (hadm 99) with a short ICU stay
- 2: index stay 2000, next ICU stay 33 days later (label 0); anthropometry
     and vitals only from chartevents
- 3: 17 years old (excluded)
- 4: died in hospital (excluded)
- 5: first stay too short; index stay 5001 on the second admission
- 6: index stay 6000; next ICU stay 6001 is itself ineligible but still
     makes the label 1 (7 days)
"""

import pandas as pd
import pytest


def _ts(value):
    return pd.Timestamp(value) if value is not None else pd.NaT


def _admission(subject_id, hadm_id, admittime, dischtime, expire=0):
    return {
        'subject_id': subject_id,
        'hadm_id': hadm_id,
        'admittime': _ts(admittime),
        'dischtime': _ts(dischtime),
        'deathtime': pd.NaT,
        'admission_type': 'EW EMER.',
        'admission_location': 'EMERGENCY ROOM',
        'discharge_location': 'HOME' if not expire else 'DIED',
        'insurance': 'Medicare',
        'race': 'WHITE',
        'hospital_expire_flag': expire,
    }


def _stay(subject_id, hadm_id, stay_id, intime, outtime):
    return {
        'subject_id': subject_id,
        'hadm_id': hadm_id,
        'stay_id': stay_id,
        'first_careunit': 'Medical Intensive Care Unit (MICU)',
        'last_careunit': 'Medical Intensive Care Unit (MICU)',
        'intime': _ts(intime),
        'outtime': _ts(outtime),
    }


def _chart(subject_id, hadm_id, stay_id, itemid, charttime, value, unit=None):
    return {
        'subject_id': subject_id,
        'hadm_id': hadm_id,
        'stay_id': stay_id,
        'itemid': itemid,
        'charttime': _ts(charttime),
        'valuenum': value,
        'valueuom': unit,
    }


def _lab(subject_id, hadm_id, itemid, charttime, value, unit=None):
    return {
        'subject_id': subject_id,
        'hadm_id': hadm_id,
        'itemid': itemid,
        'charttime': _ts(charttime),
        'valuenum': value,
        'valueuom': unit,
    }


def synthetic_tables():
    """Table name -> DataFrame for the six-subject source."""
    patients = pd.DataFrame({
        'subject_id': [1, 2, 3, 4, 5, 6],
        'gender': ['M', 'F', 'M', 'F', 'M', 'F'],
        'anchor_age': [65, 50, 17, 70, 45, 80],
        'anchor_year_group': ['2017 - 2019'] * 6,
    })

    admissions = pd.DataFrame([
        _admission(1, 99, '2149-12-05 10:00', '2149-12-10 12:00'),
        _admission(1, 100, '2150-01-01 06:00', '2150-01-05 12:00'),
        _admission(1, 101, '2150-01-20 06:00', '2150-01-25 12:00'),
        _admission(2, 200, '2150-01-01 06:00', '2150-01-06 12:00'),
        _admission(2, 201, '2150-02-05 06:00', '2150-02-09 12:00'),
        _admission(3, 300, '2150-01-01 06:00', '2150-01-05 12:00'),
        _admission(4, 400, '2150-01-01 06:00', '2150-01-05 12:00', expire=1),
        _admission(5, 500, '2150-01-01 06:00', '2150-01-02 12:00'),
        _admission(5, 501, '2150-01-10 06:00', '2150-01-14 12:00'),
        _admission(6, 600, '2150-01-01 06:00', '2150-01-05 12:00'),
        _admission(6, 601, '2150-01-10 06:00', '2150-01-11 12:00', expire=1),
    ])

    icustays = pd.DataFrame([
        _stay(1, 99, 990, '2149-12-05 12:00', '2149-12-05 22:00'),
        _stay(1, 100, 1000, '2150-01-01 08:00', '2150-01-03 08:00'),
        _stay(1, 101, 1001, '2150-01-20 08:00', '2150-01-22 08:00'),
        _stay(2, 200, 2000, '2150-01-01 08:00', '2150-01-03 08:00'),
        _stay(2, 201, 2001, '2150-02-05 08:00', '2150-02-07 08:00'),
        _stay(3, 300, 3000, '2150-01-01 08:00', '2150-01-03 08:00'),
        _stay(4, 400, 4000, '2150-01-01 08:00', '2150-01-03 08:00'),
        _stay(5, 500, 5000, '2150-01-01 08:00', '2150-01-01 20:00'),
        _stay(5, 501, 5001, '2150-01-10 08:00', '2150-01-12 08:00'),
        _stay(6, 600, 6000, '2150-01-01 08:00', '2150-01-03 08:00'),
        _stay(6, 601, 6001, '2150-01-10 08:00', '2150-01-10 18:00'),
    ])

    chartevents = pd.DataFrame([
        # Anthropometry before ICU admission (subject 2)
        _chart(2, 200, 2000, 226730, '2150-01-01 07:00', 160.0, 'cm'),
        _chart(2, 200, 2000, 226531, '2150-01-01 07:00', 154.0, 'lb'),
        # Heart rate: 400 is implausible, the last row is outside the window
        _chart(2, 200, 2000, 220045, '2150-01-01 09:00', 90.0, 'bpm'),
        _chart(2, 200, 2000, 220045, '2150-01-01 10:00', 100.0, 'bpm'),
        _chart(2, 200, 2000, 220045, '2150-01-01 11:00', 400.0, 'bpm'),
        _chart(2, 200, 2000, 220045, '2150-01-02 09:00', 95.0, 'bpm'),
        _chart(2, 200, 2000, 223761, '2150-01-01 09:00', 98.6, '°F'),
        _chart(2, 200, 2000, 220181, '2150-01-01 09:00', 62.0, 'mmHg'),
        _chart(2, 200, 2000, 220181, '2150-01-01 13:00', 70.0, 'mmHg'),
        # GCS: totals 13 at 09:00 and 10 at 12:00
        _chart(2, 200, 2000, 220739, '2150-01-01 09:00', 3.0),
        _chart(2, 200, 2000, 223900, '2150-01-01 09:00', 4.0),
        _chart(2, 200, 2000, 223901, '2150-01-01 09:00', 6.0),
        _chart(2, 200, 2000, 220739, '2150-01-01 12:00', 2.0),
        _chart(2, 200, 2000, 223900, '2150-01-01 12:00', 3.0),
        _chart(2, 200, 2000, 223901, '2150-01-01 12:00', 5.0),
    ])

    labevents = pd.DataFrame([
        _lab(1, 100, 50912, '2150-01-01 10:00', 2.1, 'mg/dL'),
        _lab(2, 200, 50912, '2150-01-01 10:00', 2.1, 'mg/dL'),
        _lab(2, 200, 50813, '2150-01-01 09:00', 3.0, 'mmol/L'),
        _lab(2, 200, 50813, '2150-01-01 15:00', 5.0, 'mmol/L'),
        _lab(2, 200, 50813, '2150-01-02 09:00', 9.0, 'mmol/L'),
        _lab(2, 200, 50820, '2150-01-01 09:00', 7.30, 'units'),
        _lab(2, 200, 50820, '2150-01-01 20:00', 7.38, 'units'),
    ])

    omr = pd.DataFrame({
        'subject_id': [1, 2],
        'chartdate': [_ts('2149-12-20'), _ts('2150-02-01')],
        'result_name': ['BMI (kg/m2)', 'Weight (Lbs)'],
        'result_value': ['30.5', '200'],
    })

    charlson_row = {component: 0 for component in [
        'myocardial_infarct', 'congestive_heart_failure', 'peripheral_vascular_disease',
        'cerebrovascular_disease', 'dementia', 'chronic_pulmonary_disease',
        'rheumatic_disease', 'peptic_ulcer_disease', 'mild_liver_disease',
        'diabetes_without_cc', 'diabetes_with_cc', 'paraplegia', 'renal_disease',
        'malignant_cancer', 'severe_liver_disease', 'metastatic_solid_tumor', 'aids',
    ]}
    charlson_row.update({
        'subject_id': 1,
        'hadm_id': 100,
        'congestive_heart_failure': 1,
        'charlson_comorbidity_index': 3,
    })

    return {
        'patients': patients,
        'admissions': admissions,
        'icustays': icustays,
        'chartevents': chartevents,
        'labevents': labevents,
        'omr': omr,
        'first_day_height': pd.DataFrame({'subject_id': [1], 'stay_id': [1000], 'height': [175.0]}),
        'first_day_weight': pd.DataFrame({
            'subject_id': [1, 2], 'stay_id': [1000, 2000], 'weight': [80.0, 900.0],
        }),
        'first_day_vitalsign': pd.DataFrame({
            'subject_id': [1], 'stay_id': [1000],
            'heart_rate_min': [60.0], 'heart_rate_max': [110.0], 'heart_rate_mean': [85.0],
            'mbp_min': [60.0], 'mbp_mean': [75.0],
            'temperature_min': [36.5], 'temperature_max': [37.8], 'temperature_mean': [37.0],
        }),
        'first_day_lab': pd.DataFrame({
            'subject_id': [1], 'stay_id': [1000],
            'creatinine_max': [1.8], 'hemoglobin_min': [11.2], 'hemoglobin_max': [12.0],
            'sodium_min': [138.0], 'wbc_max': [9.5],
        }),
        'first_day_gcs': pd.DataFrame({
            'subject_id': [1], 'stay_id': [1000],
            'gcs_min': [14.0], 'gcs_motor': [6.0], 'gcs_verbal': [4.0],
            'gcs_eyes': [4.0], 'gcs_unable': [0.0],
        }),
        'first_day_urine_output': pd.DataFrame({
            'subject_id': [1, 2], 'stay_id': [1000, 2000], 'urineoutput': [1200.0, 600.0],
        }),
        'charlson': pd.DataFrame([charlson_row]),
        'diagnoses_icd': pd.DataFrame({
            'subject_id': [1, 2],
            'hadm_id': [100, 200],
            'icd_code': ['I48.91', 'I509'],
            'icd_version': [10, 10],
        }),
        'norepinephrine': pd.DataFrame({
            'stay_id': [1000],
            'starttime': [_ts('2150-01-01 06:00')],
            'endtime': [_ts('2150-01-01 09:00')],
        }),
        # Ends exactly at the window start: no overlap
        'ventilation': pd.DataFrame({
            'stay_id': [1000],
            'starttime': [_ts('2149-12-31 20:00')],
            'endtime': [_ts('2150-01-01 08:00')],
        }),
        # Starts exactly at the window end: no overlap
        'vasoactive_agent': pd.DataFrame({
            'stay_id': [2000],
            'starttime': [_ts('2150-01-02 08:00')],
            'endtime': [_ts('2150-01-02 10:00')],
        }),
        'antibiotic': pd.DataFrame({
            'subject_id': [1],
            'hadm_id': [100],
            'stay_id': [None],
            'starttime': [_ts('2150-01-01 09:00')],
            'stoptime': [_ts('2150-01-02 09:00')],
        }),
        'acei': pd.DataFrame({
            'subject_id': [1],
            'hadm_id': [100],
            'starttime': [_ts('2150-01-01 00:00')],
            'stoptime': [_ts('2150-01-02 00:00')],
        }),
        'sofa': pd.DataFrame({
            'stay_id': [1000],
            'endtime': [_ts('2150-01-01 20:00')],
            'sofa_24hours': [6],
            'respiration_24hours': [2],
            'coagulation_24hours': [1],
            'liver_24hours': [0],
            'cardiovascular_24hours': [1],
            'cns_24hours': [1],
            'renal_24hours': [1],
        }),
        'sepsis3': pd.DataFrame({'stay_id': [1000, 2000], 'sepsis3': [True, False]}),
        'sirs': pd.DataFrame({'stay_id': [1000], 'sirs': [3]}),
    }


@pytest.fixture
def tables():
    return synthetic_tables()


@pytest.fixture
def source(tables):
    from readmission30.extractors.source_extractor import SourceStore
    return SourceStore(tables)


@pytest.fixture
def cohort_result(source):
    from readmission30.processing.cohort_builder import CohortBuilder
    return CohortBuilder.from_source(source).build()


@pytest.fixture
def cohort(cohort_result):
    return cohort_result.cohort


@pytest.fixture
def run_timestamp():
    return pd.Timestamp('2150-06-01 00:00')
