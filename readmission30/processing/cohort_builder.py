"""
Cohort Builder
==============

Selects one index ICU stay per patient and computes the 30-day ICU
readmission label.

Inclusion (applied in this order, each exclusion counted):
1. Stay joins to its admission and patient with age and admit/discharge times
2. intime and outtime present, intime < outtime
3. Age >= 18
4. ICU LOS >= 1440 minutes
5. Survived the owning admission (hospital_expire_flag null or 0)

Index stay: earliest intime among a patient's eligible stays.

Label: the earliest ICU stay of the same patient (any stay, eligible or not)
starting strictly after the index outtime. Gap in whole days (floor);
readmit_30d_flag = 1 iff 1 <= gap <= 30.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd

from ..config.pipeline_config import COHORT_CONFIG, WINDOW_CONFIG, CohortConfig, WindowConfig
from ..extractors.source_extractor import SourceStore

logger = logging.getLogger(__name__)

COHORT_COLUMNS = [
    'subject_id', 'hadm_id', 'index_stay_id',
    'index_icu_intime', 'index_icu_outtime',
    'index_icu_los_minutes', 'index_icu_los_hours', 'index_icu_los_days',
    'gender', 'anchor_age', 'anchor_year_group',
    'admittime', 'dischtime', 'admission_type', 'admission_location',
    'discharge_location', 'insurance', 'race',
    'first_careunit', 'last_careunit', 'hospital_los_days',
    'mortality_in_index_admission', 'next_icu_intime_after_index',
    'readmit_30d_flag', 'days_to_30d_readmission',
]

EXCLUSION_KEYS = [
    'n_stays_total',
    'n_missing_join_fields',
    'n_invalid_times',
    'n_underage',
    'n_short_stay',
    'n_died_in_hospital',
    'n_subjects_without_qualifying_stay',
]

ONE_DAY = pd.Timedelta(days=1)


@dataclass
class CohortResult:
    """Cohort table plus exclusion counts for the QC report."""

    cohort: pd.DataFrame
    exclusions: Dict[str, int] = field(default_factory=dict)


def whole_units_between(start: pd.Series, end: pd.Series, unit: pd.Timedelta) -> pd.Series:
    """Whole elapsed units from start to end (floor), nullable integer."""
    return ((end - start) // unit).astype('Int64')


def compute_readmission_label(
    index_outtime: pd.Series,
    next_intime: pd.Series,
    min_days: int = WINDOW_CONFIG.readmission_min_days,
    max_days: int = WINDOW_CONFIG.readmission_max_days,
) -> pd.DataFrame:
    """
    Label from index discharge and next ICU admission times.

    Args:
        index_outtime: Index stay outtime
        next_intime: Earliest subsequent ICU intime (NaT when none)
        min_days: Lower bound of the label window (inclusive)
        max_days: Upper bound of the label window (inclusive)

    Returns:
        DataFrame with readmit_30d_flag (0/1) and days_to_30d_readmission
        (Int64, null unless the label is 1)
    """
    gap = whole_units_between(index_outtime, next_intime, ONE_DAY)
    flag = (gap >= min_days) & (gap <= max_days)
    flag = flag.fillna(False).astype(bool)
    return pd.DataFrame({
        'readmit_30d_flag': flag.astype('int64'),
        'days_to_30d_readmission': gap.where(flag, pd.NA).astype('Int64'),
    }, index=index_outtime.index)


class CohortBuilder:
    """Build the index-stay cohort from patients, admissions and ICU stays."""

    def __init__(
        self,
        patients: pd.DataFrame,
        admissions: pd.DataFrame,
        icustays: pd.DataFrame,
        cohort_config: Optional[CohortConfig] = None,
        window_config: Optional[WindowConfig] = None,
    ):
        """
        Initialize builder.

        Args:
            patients: subject_id, gender, anchor_age, anchor_year_group
            admissions: admission rows with admit/discharge times
            icustays: ICU stay rows with intime/outtime
            cohort_config: Inclusion thresholds (default: COHORT_CONFIG)
            window_config: Label window (default: WINDOW_CONFIG)
        """
        self.patients = patients
        self.admissions = admissions
        self.icustays = icustays
        self.cohort_config = cohort_config or COHORT_CONFIG
        self.window_config = window_config or WINDOW_CONFIG
        self._preprocess()

    @classmethod
    def from_source(cls, source: SourceStore, **kwargs) -> 'CohortBuilder':
        return cls(
            source.table('patients'),
            source.table('admissions'),
            source.table('icustays'),
            **kwargs,
        )

    def _preprocess(self):
        """Parse timestamps and numerics."""
        self.patients = self.patients.copy()
        self.patients['anchor_age'] = pd.to_numeric(self.patients['anchor_age'], errors='coerce')

        self.admissions = self.admissions.copy()
        for col in ['admittime', 'dischtime']:
            self.admissions[col] = pd.to_datetime(self.admissions[col], errors='coerce')
        self.admissions['hospital_expire_flag'] = pd.to_numeric(
            self.admissions['hospital_expire_flag'], errors='coerce'
        )

        self.icustays = self.icustays.copy()
        for col in ['intime', 'outtime']:
            self.icustays[col] = pd.to_datetime(self.icustays[col], errors='coerce')

    def join_stays(self) -> pd.DataFrame:
        """Left-join every ICU stay to its admission and patient snapshot."""
        admissions = self.admissions.drop(columns=['subject_id'], errors='ignore')
        stays = self.icustays.merge(admissions, on='hadm_id', how='left')
        stays = stays.merge(self.patients, on='subject_id', how='left')

        stays['icu_los_minutes'] = whole_units_between(
            stays['intime'], stays['outtime'], pd.Timedelta(minutes=1)
        )
        return stays

    def apply_inclusion(self, stays: pd.DataFrame):
        """
        Filter stays by the inclusion criteria.

        Returns:
            (eligible stays, exclusion counts)
        """
        cfg = self.cohort_config
        counts = {'n_stays_total': len(stays)}

        missing_join = (
            stays['anchor_age'].isna()
            | stays['admittime'].isna()
            | stays['dischtime'].isna()
        )
        counts['n_missing_join_fields'] = int(missing_join.sum())
        stays = stays[~missing_join]

        valid_times = (
            stays['intime'].notna()
            & stays['outtime'].notna()
            & (stays['intime'] < stays['outtime'])
        )
        counts['n_invalid_times'] = int((~valid_times).sum())
        stays = stays[valid_times]

        adult = stays['anchor_age'] >= cfg.min_age
        counts['n_underage'] = int((~adult).sum())
        stays = stays[adult]

        long_enough = stays['icu_los_minutes'] >= cfg.min_icu_los_minutes
        long_enough = long_enough.fillna(False).astype(bool)
        counts['n_short_stay'] = int((~long_enough).sum())
        stays = stays[long_enough]

        survived = stays['hospital_expire_flag'].isna() | (stays['hospital_expire_flag'] == 0)
        counts['n_died_in_hospital'] = int((~survived).sum())
        stays = stays[survived]

        all_subjects = self.icustays['subject_id'].dropna().nunique()
        counts['n_subjects_without_qualifying_stay'] = int(all_subjects - stays['subject_id'].nunique())

        return stays, counts

    def select_index_stays(self, eligible: pd.DataFrame) -> pd.DataFrame:
        """Earliest eligible stay per subject (stay_id breaks exact ties)."""
        ordered = eligible.sort_values(['subject_id', 'intime', 'stay_id'], kind='mergesort')
        return ordered.drop_duplicates(subset=['subject_id'], keep='first')

    def find_next_icu_intime(self, index: pd.DataFrame) -> pd.Series:
        """
        Earliest ICU intime of the same subject strictly after index outtime.

        Scans every ICU stay with valid timestamps, not just eligible ones.
        """
        all_stays = self.icustays.dropna(subset=['subject_id', 'intime', 'outtime'])
        candidates = index[['subject_id', 'outtime']].merge(
            all_stays[['subject_id', 'intime']], on='subject_id', how='inner'
        )
        candidates = candidates[candidates['intime'] > candidates['outtime']]
        next_intime = candidates.groupby('subject_id')['intime'].min()
        return index['subject_id'].map(next_intime)

    def build(self) -> CohortResult:
        """
        Build the cohort.

        Returns:
            CohortResult with one row per subject in COHORT_COLUMNS order
        """
        stays = self.join_stays()
        eligible, counts = self.apply_inclusion(stays)
        index = self.select_index_stays(eligible).copy()

        index['next_icu_intime_after_index'] = self.find_next_icu_intime(index)
        label = compute_readmission_label(
            index['outtime'],
            index['next_icu_intime_after_index'],
            self.window_config.readmission_min_days,
            self.window_config.readmission_max_days,
        )
        index = pd.concat([index, label], axis=1)

        cohort = pd.DataFrame({
            'subject_id': index['subject_id'],
            'hadm_id': index['hadm_id'],
            'index_stay_id': index['stay_id'],
            'index_icu_intime': index['intime'],
            'index_icu_outtime': index['outtime'],
            'index_icu_los_minutes': index['icu_los_minutes'],
            'index_icu_los_hours': whole_units_between(index['intime'], index['outtime'], pd.Timedelta(hours=1)),
            'index_icu_los_days': whole_units_between(index['intime'], index['outtime'], ONE_DAY),
            'gender': index['gender'],
            'anchor_age': index['anchor_age'],
            'anchor_year_group': index['anchor_year_group'],
            'admittime': index['admittime'],
            'dischtime': index['dischtime'],
            'admission_type': index['admission_type'],
            'admission_location': index['admission_location'],
            'discharge_location': index['discharge_location'],
            'insurance': index['insurance'],
            'race': index['race'],
            'first_careunit': index['first_careunit'],
            'last_careunit': index['last_careunit'],
            'hospital_los_days': whole_units_between(index['admittime'], index['dischtime'], ONE_DAY),
            'mortality_in_index_admission': index['hospital_expire_flag'].fillna(0).astype('int64'),
            'next_icu_intime_after_index': index['next_icu_intime_after_index'],
            'readmit_30d_flag': index['readmit_30d_flag'],
            'days_to_30d_readmission': index['days_to_30d_readmission'],
        })
        cohort = cohort.sort_values('subject_id', kind='mergesort').reset_index(drop=True)

        logger.info(
            f"Cohort: {len(cohort):,} index stays from {counts['n_stays_total']:,} ICU stays"
        )
        for key in EXCLUSION_KEYS[1:]:
            logger.info(f"  {key}: {counts[key]:,}")

        return CohortResult(cohort=cohort[COHORT_COLUMNS], exclusions=counts)


def build_cohort(source: SourceStore, cohort_config: Optional[CohortConfig] = None,
                 window_config: Optional[WindowConfig] = None) -> CohortResult:
    """Build the cohort straight from a source store."""
    builder = CohortBuilder.from_source(
        source, cohort_config=cohort_config, window_config=window_config
    )
    return builder.build()


def audit_cohort(cohort: pd.DataFrame) -> Dict:
    """
    Informational statistics about a cohort.

    Args:
        cohort: Output of CohortBuilder.build().cohort

    Returns:
        Dict with overall counts, readmission rate, LOS means, the
        days-to-readmission distribution and per-gender breakdown
    """
    n = len(cohort)
    readmit = cohort['readmit_30d_flag']
    days = pd.to_numeric(cohort['days_to_30d_readmission'], errors='coerce').dropna()

    def _mean(series) -> Optional[float]:
        values = pd.to_numeric(series, errors='coerce').dropna()
        return round(float(values.mean()), 1) if len(values) else None

    audit = {
        'n_patients': n,
        'n_unique_subjects': int(cohort['subject_id'].nunique()),
        'n_readmitted': int(readmit.sum()),
        'readmission_rate': round(float(readmit.mean()), 4) if n else None,
        'mean_age': _mean(cohort['anchor_age']),
        'mean_icu_los_days': _mean(cohort['index_icu_los_days']),
        'mean_hospital_los_days': _mean(cohort['hospital_los_days']),
        'days_to_readmission': {
            'min': int(days.min()) if len(days) else None,
            'median': float(np.median(days)) if len(days) else None,
            'mean': round(float(days.mean()), 2) if len(days) else None,
            'max': int(days.max()) if len(days) else None,
        },
        'by_gender': {},
    }

    for gender, group in cohort.groupby('gender'):
        audit['by_gender'][str(gender)] = {
            'n': len(group),
            'mean_age': _mean(group['anchor_age']),
            'readmission_rate': round(float(group['readmit_30d_flag'].mean()), 4),
        }

    return audit
