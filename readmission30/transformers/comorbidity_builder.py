# transformers/comorbidity_builder.py
"""
Comorbidity & Severity Feature Builder
======================================

Chronic comorbidities, the Charlson index and first-24h acuity scores.

Charlson components: charlson (trusted) -> charlson_local -> ICD prefix
mapping flag. The final index is charlson -> charlson_local -> a composite
weighted sum of the resolved component flags (CHARLSON_WEIGHTS; no
hierarchy rules, no age points).
"""

import logging
from typing import Dict, List, Optional

import pandas as pd

from ..config.concept_registry import CHARLSON_COMPONENTS, CHARLSON_WEIGHTS
from ..config.pipeline_config import load_icd_comorbidity_map
from .base_builder import LayerBuilder, available_flag, flag

logger = logging.getLogger(__name__)

ICD_COMORBIDITY_MAP: Dict[str, Dict] = load_icd_comorbidity_map()['comorbidities']

MAPPING_FLAG_COLUMNS = [entry['flag'] for entry in ICD_COMORBIDITY_MAP.values()]

# Charlson component -> mapping flag column
COMPONENT_MAPPING_FLAGS = {
    entry['charlson_component']: entry['flag']
    for entry in ICD_COMORBIDITY_MAP.values()
    if entry.get('charlson_component')
}

BURDEN_FLAGS = ['chf_flag', 'copd_flag', 'ckd_flag', 'cancer_flag', 'afib_flag', 'hypertension_flag']

CHARLSON_SOURCE_LABELS = {
    'charlson': 'physionet',
    'charlson_local': 'local',
    'composite_charlson': 'mapping_fallback',
}

SOFA_COLUMNS = {
    'sofa_score_first_24h': 'sofa_24hours',
    'sofa_respiration_24h': 'respiration_24hours',
    'sofa_coagulation_24h': 'coagulation_24hours',
    'sofa_liver_24h': 'liver_24hours',
    'sofa_cardiovascular_24h': 'cardiovascular_24hours',
    'sofa_cns_24h': 'cns_24hours',
    'sofa_renal_24h': 'renal_24hours',
}

# output column -> (table, column); maximum per stay
STAY_SCORE_COLUMNS = {
    'apsiii_score_first_24h': ('apsiii', 'apsiii'),
    'sapsii_score_first_24h': ('sapsii', 'sapsii'),
    'lods_score_first_24h': ('lods', 'lods'),
    'oasis_score_first_24h': ('oasis', 'oasis'),
}

TRUE_STRINGS = {'true', 't', '1', '1.0', 'yes'}


# =============================================================================
# ICD PREFIX MAPPING
# =============================================================================

def normalize_icd_code(code) -> str:
    """Uppercase, trimmed, dots removed ('I50.9 ' -> 'I509')."""
    if code is None or pd.isna(code):
        return ''
    return str(code).strip().upper().replace('.', '')


def map_icd_flags(diagnoses: pd.DataFrame, comorbidity_map: Optional[Dict] = None) -> pd.DataFrame:
    """
    Per-admission comorbidity flags from diagnosis codes.

    Args:
        diagnoses: diagnoses_icd rows (hadm_id, icd_code, icd_version)
        comorbidity_map: Map to use (default: icd_comorbidity_map.yaml)

    Returns:
        DataFrame indexed by hadm_id with one 0/1 column per mapped flag.
        Admissions with no diagnosis rows are absent.
    """
    comorbidity_map = comorbidity_map or ICD_COMORBIDITY_MAP
    flag_columns = [entry['flag'] for entry in comorbidity_map.values()]
    diagnoses = diagnoses.dropna(subset=['hadm_id'])
    if diagnoses.empty:
        return pd.DataFrame(columns=flag_columns, index=pd.Index([], name='hadm_id'))

    codes = diagnoses['icd_code'].map(normalize_icd_code)
    versions = pd.to_numeric(diagnoses['icd_version'], errors='coerce')

    matched = pd.DataFrame({'hadm_id': diagnoses['hadm_id']})
    for entry in comorbidity_map.values():
        hit = pd.Series(False, index=diagnoses.index)
        for version in (9, 10):
            prefixes = tuple(normalize_icd_code(p) for p in (entry.get(f'icd{version}') or []))
            if prefixes:
                hit |= (versions == version) & codes.str.startswith(prefixes)
        matched[entry['flag']] = hit.astype('int64')

    return matched.groupby('hadm_id')[flag_columns].max()


def composite_charlson_index(components: pd.DataFrame) -> pd.Series:
    """
    Weighted sum of resolved component flags.

    Args:
        components: One column per Charlson component (0/1/null)

    Returns:
        Index per row; null when every component is null
    """
    weighted = pd.DataFrame({
        component: components[component] * CHARLSON_WEIGHTS[component]
        for component in CHARLSON_COMPONENTS
    })
    return weighted.sum(axis=1, min_count=1)


def classify_sofa(score) -> str:
    """SOFA risk band: Very High (>=10), High (>=7), Moderate (>=4), Low, Unknown."""
    if score is None or pd.isna(score):
        return 'Unknown'
    if score >= 10:
        return 'Very High'
    if score >= 7:
        return 'High'
    if score >= 4:
        return 'Moderate'
    return 'Low'


def _truthy(values: pd.Series) -> pd.Series:
    if values.dtype == bool:
        return values
    return values.astype(str).str.strip().str.lower().isin(TRUE_STRINGS)


class ComorbidityBuilder(LayerBuilder):
    """Build comorbidity, Charlson and severity features."""

    NAME = 'comorbidity'

    OUTPUT_COLUMNS: List[str] = (
        list(CHARLSON_COMPONENTS)
        + [
            'charlson_index_final',
            'charlson_source',
            'pn_charlson_index',
            'local_charlson_index',
            'mapping_charlson_index',
        ]
        + MAPPING_FLAG_COLUMNS
        + ['total_comorbidity_count_mapping']
        + list(SOFA_COLUMNS)
        + list(STAY_SCORE_COLUMNS)
        + [
            'kdigo_stage_max_first_24h',
            'sepsis3_flag',
            'sirs_flag',
            'suspicion_of_infection_flag',
            'suspected_infection_time',
            'sofa_risk_category',
            'charlson_available_flag',
            'sofa_available_flag',
            'apsiii_available_flag',
            'sapsii_available_flag',
            'kdigo_available_flag',
        ]
    )

    def mapping_flags(self) -> pd.DataFrame:
        """ICD mapping flags per cohort stay (null when the admission has no diagnoses)."""
        per_hadm = map_icd_flags(self.source.table('diagnoses_icd'))
        mapped = per_hadm.reindex(pd.Index(self.keys['hadm_id']))
        mapped.index = self.index
        return mapped.astype(float)

    def _charlson(self, features: pd.DataFrame, mapping: pd.DataFrame):
        charlson = self.source.table('charlson')
        local = self.source.table('charlson_local')

        for component in CHARLSON_COMPONENTS:
            candidates = {
                'charlson': self.hadm_values(charlson, component),
                'charlson_local': self.hadm_values(local, component),
            }
            mapping_flag = COMPONENT_MAPPING_FLAGS.get(component)
            if mapping_flag is not None:
                candidates['icd_mapping'] = mapping[mapping_flag]
            features[component] = self.resolve(component, candidates).values

        pn_index = self.hadm_values(charlson, 'charlson_comorbidity_index')
        local_index = self.hadm_values(local, 'charlson_comorbidity_index')
        composite = composite_charlson_index(features[CHARLSON_COMPONENTS])

        final = self.resolve('charlson_index_final', {
            'charlson': pn_index,
            'charlson_local': local_index,
            'composite_charlson': composite,
        })
        features['charlson_index_final'] = final.values
        features['charlson_source'] = final.providers.map(CHARLSON_SOURCE_LABELS).fillna('none')
        features['pn_charlson_index'] = pn_index
        features['local_charlson_index'] = local_index

        mapped_components = [c for c in CHARLSON_COMPONENTS if c in COMPONENT_MAPPING_FLAGS]
        features['mapping_charlson_index'] = pd.DataFrame({
            c: mapping[COMPONENT_MAPPING_FLAGS[c]] * CHARLSON_WEIGHTS[c] for c in mapped_components
        }).sum(axis=1, min_count=1)

        self.stats['charlson_source'] = features['charlson_source'].value_counts().to_dict()

    def _severity(self, features: pd.DataFrame):
        window = self.first_day_window()

        sofa = window.select_instant(self.source.table('sofa'), time_column='endtime', match='stay')
        for column, source_column in SOFA_COLUMNS.items():
            if sofa.empty:
                features[column] = float('nan')
                continue
            values = pd.to_numeric(sofa[source_column], errors='coerce')
            features[column] = values.groupby(sofa['index_stay_id']).max().reindex(self.index)

        for column, (table, source_column) in STAY_SCORE_COLUMNS.items():
            features[column] = self.stay_values(self.source.table(table), source_column, how='max')

        kdigo = window.select_instant(self.source.table('kdigo_stages'), match='stay')
        features['kdigo_stage_max_first_24h'] = self.stay_values(kdigo, 'aki_stage_smoothed', how='max')

        sepsis = self.source.table('sepsis3')
        septic_stays = set(sepsis.loc[_truthy(sepsis['sepsis3']), 'stay_id'].dropna())
        features['sepsis3_flag'] = pd.Series(self.index.isin(septic_stays), index=self.index).astype('int64')

        sirs = self.stay_values(self.source.table('sirs'), 'sirs', how='max')
        features['sirs_flag'] = flag(sirs >= 2)

        soi = self.source.table('suspicion_of_infection')
        soi = soi.dropna(subset=['stay_id', 'suspected_infection_time'])
        first_time = soi.groupby('stay_id')['suspected_infection_time'].min().reindex(self.index)
        features['suspicion_of_infection_flag'] = available_flag(first_time)
        features['suspected_infection_time'] = first_time

        features['sofa_risk_category'] = features['sofa_score_first_24h'].map(classify_sofa)

    def build_features(self) -> pd.DataFrame:
        features = pd.DataFrame(index=self.index)
        mapping = self.mapping_flags()

        self._charlson(features, mapping)

        for column in MAPPING_FLAG_COLUMNS:
            features[column] = mapping[column]
        features['total_comorbidity_count_mapping'] = (
            mapping[BURDEN_FLAGS].fillna(0).sum(axis=1).astype('int64')
        )

        self._severity(features)

        features['charlson_available_flag'] = available_flag(features['charlson_index_final'])
        features['sofa_available_flag'] = available_flag(features['sofa_score_first_24h'])
        features['apsiii_available_flag'] = available_flag(features['apsiii_score_first_24h'])
        features['sapsii_available_flag'] = available_flag(features['sapsii_score_first_24h'])
        features['kdigo_available_flag'] = available_flag(features['kdigo_stage_max_first_24h'])

        self.stats['n_without_diagnoses'] = int(mapping.isna().all(axis=1).sum())
        return features
