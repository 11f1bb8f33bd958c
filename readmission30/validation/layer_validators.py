"""
Layer Validators
================

Declarative QC rules per pipeline stage.

Stages:
- Config: precedence table, owner table, plausible ranges and the ICD map
  are consistent
- Cohort: one row per subject, label domain, days-to-event only when label=1
- Layers: row count/key uniqueness, coverage, ranges, min <= max,
  label-conditioned sanity
- Schema: no duplicate published names across layers
- Final: row count equals cohort, keys unique, declared schema, target
  distribution, availability gap by label
"""

import logging
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from ..config.concept_registry import (
    CANONICAL_OWNERS,
    CHARLSON_WEIGHTS,
    KEY_COLUMNS,
    LABEL_COLUMNS,
    LAYER_ORDER,
    PLAUSIBLE_RANGES,
    SOURCE_PRECEDENCE,
)
from ..config.pipeline_config import (
    QC_CONFIG,
    COHORT_CONFIG,
    CohortConfig,
    QCConfig,
    load_icd_comorbidity_map,
)
from ..processing.assembler import expected_schema, find_duplicate_columns
from ..processing.normalizer import plausible_mask
from ..processing.precedence_merger import check_precedence_config
from .qc_harness import QCFinding

logger = logging.getLogger(__name__)

LABEL = LABEL_COLUMNS[0]
DAYS_TO_EVENT = LABEL_COLUMNS[1]

# Per layer:
#   coverage      columns whose non-null fraction is checked (QC_CONFIG thresholds)
#   range         extra column -> plausible range key, on top of every
#                 published precedence concept
#   label_sanity  columns whose mean should differ between label groups
LAYER_QC_RULES: Dict[str, Dict] = {
    'demographics': {
        'coverage': ['age_at_admission', 'gender', 'index_icu_los_hours'],
        'range': {},
        'label_sanity': ['age_at_admission', 'index_icu_los_days'],
    },
    'anthropometry': {
        'coverage': ['height_cm', 'weight_kg', 'bmi'],
        'range': {},
        'label_sanity': ['bmi'],
    },
    'vitals': {
        'coverage': [
            'hr_first_24h_mean', 'sbp_first_24h_mean', 'mbp_first_24h_mean',
            'rr_first_24h_mean', 'temp_c_first_24h_mean', 'spo2_first_24h_mean',
        ],
        'range': {},
        'label_sanity': ['hr_first_24h_mean', 'rr_first_24h_mean'],
    },
    'labs': {
        'coverage': [
            'creatinine_first_24h_max', 'hemoglobin_first_24h_min',
            'glucose_first_24h_max', 'sodium_first_24h_min', 'wbc_first_24h_max',
        ],
        'range': {},
        'label_sanity': ['creatinine_first_24h_max', 'bun_first_24h_max'],
    },
    'neurological': {
        'coverage': ['gcs_total_first_24h'],
        'range': {
            'gcs_total_first_24h': 'gcs_total',
            'gcs_eyes_first_24h': 'gcs_eyes',
            'gcs_verbal_first_24h': 'gcs_verbal',
            'gcs_motor_first_24h': 'gcs_motor',
        },
        'label_sanity': ['gcs_total_first_24h'],
    },
    'medications': {
        'coverage': [],
        'range': {},
        'label_sanity': ['treatment_intensity_score_24h'],
    },
    'comorbidity': {
        'coverage': ['charlson_index_final', 'sofa_score_first_24h'],
        'range': {},
        'label_sanity': ['charlson_index_final', 'sofa_score_first_24h'],
    },
    'prior_history': {
        'coverage': ['urine_output_first_24h_ml'],
        'range': {},
        'label_sanity': ['prior_admissions_12m'],
    },
}


# =============================================================================
# HELPERS
# =============================================================================

def range_columns(layer: str, columns: List[str]) -> Dict[str, str]:
    """Column -> plausible range key for every range-checked column of a layer."""
    ranges = {c: SOURCE_PRECEDENCE[c]['range'] for c in columns if c in SOURCE_PRECEDENCE}
    for column, key in LAYER_QC_RULES.get(layer, {}).get('range', {}).items():
        if column in columns:
            ranges[column] = key
    return ranges


def min_max_pairs(columns: List[str]) -> List[Tuple[str, str]]:
    """(x_min, x_max) column pairs present in a column list."""
    present = set(columns)
    return [
        (column, column[:-len('_min')] + '_max')
        for column in columns
        if column.endswith('_min') and column[:-len('_min')] + '_max' in present
    ]


def _coverage(values: pd.Series) -> float:
    return float(values.notna().mean()) if len(values) else 0.0


def _labels_for(features: pd.DataFrame, cohort: pd.DataFrame) -> pd.Series:
    labels = cohort.set_index('index_stay_id')[LABEL]
    return features['index_stay_id'].map(labels)


# =============================================================================
# CONFIG
# =============================================================================

def check_comorbidity_map(comorbidity_map: Mapping[str, Dict]) -> List[str]:
    """Problems in the ICD map: own weights, or components without a weight."""
    problems = []
    for key, entry in comorbidity_map.items():
        if 'weight' in entry:
            problems.append(f"{key}: carries its own weight")
        component = entry.get('charlson_component')
        if component and component not in CHARLSON_WEIGHTS:
            problems.append(f"{key}: no weight for component '{component}'")
    return problems


def validate_config(comorbidity_map: Optional[Mapping[str, Dict]] = None) -> List[QCFinding]:
    """Static configuration consistency (fatal on any problem).

    Args:
        comorbidity_map: ICD map entries (default: icd_comorbidity_map.yaml)
    """
    if comorbidity_map is None:
        comorbidity_map = load_icd_comorbidity_map()['comorbidities']
    findings = []

    problems = check_precedence_config()
    findings.append(QCFinding.make(
        "Precedence table consistent with plausible ranges and tiers",
        'config', 'f', not problems,
        observed=len(problems), expected=0,
        details="; ".join(problems[:10]),
    ))

    bad_owners = {c: owner for c, (owner, _) in CANONICAL_OWNERS.items() if owner not in LAYER_ORDER}
    findings.append(QCFinding.make(
        "Canonical owners name known layers",
        'config', 'f', not bad_owners,
        observed=bad_owners, expected=LAYER_ORDER,
    ))

    inverted = [k for k, (lo, hi) in PLAUSIBLE_RANGES.items() if lo > hi]
    findings.append(QCFinding.make(
        "No inverted plausible ranges",
        'config', 'f', not inverted,
        observed=inverted, expected=[],
    ))

    map_problems = check_comorbidity_map(comorbidity_map)
    findings.append(QCFinding.make(
        "Comorbidity map weighted only by CHARLSON_WEIGHTS",
        'config', 'f', not map_problems,
        observed=len(map_problems), expected=0,
        details="; ".join(map_problems[:10]),
    ))
    return findings


# =============================================================================
# COHORT
# =============================================================================

def validate_cohort(
    cohort: pd.DataFrame,
    exclusions: Optional[Dict[str, int]] = None,
    cohort_config: Optional[CohortConfig] = None,
    label_window: Tuple[int, int] = (1, 30),
) -> List[QCFinding]:
    """
    Cohort checkpoint.

    Args:
        cohort: Cohort table
        exclusions: Exclusion counts from CohortBuilder
        cohort_config: Inclusion thresholds (default: COHORT_CONFIG)
        label_window: Inclusive readmission day window

    Returns:
        Findings for the cohort stage
    """
    cohort_config = cohort_config or COHORT_CONFIG
    scope = 'cohort'
    findings = [QCFinding.make(
        "Cohort size", scope, 'info', True,
        observed=len(cohort), details=f"{len(cohort):,} index stays",
    )]
    if exclusions:
        findings.append(QCFinding.make(
            "Exclusion counts", scope, 'info', True, observed=exclusions,
        ))

    n_dup_subjects = int(cohort['subject_id'].duplicated().sum())
    findings.append(QCFinding.make(
        "One index stay per subject", scope, 'a', n_dup_subjects == 0,
        observed=n_dup_subjects, expected=0,
    ))
    n_dup_stays = int(cohort['index_stay_id'].duplicated().sum())
    findings.append(QCFinding.make(
        "Unique index_stay_id", scope, 'a', n_dup_stays == 0,
        observed=n_dup_stays, expected=0,
    ))

    labels = cohort[LABEL]
    bad_labels = int((~labels.isin([0, 1])).sum())
    findings.append(QCFinding.make(
        "Label in {0, 1}", scope, 'd', bad_labels == 0,
        observed=bad_labels, expected=0,
    ))

    days = pd.to_numeric(cohort[DAYS_TO_EVENT], errors='coerce')
    mismatched = int(((labels == 1) != days.notna()).sum())
    findings.append(QCFinding.make(
        "Days-to-event present iff label = 1", scope, 'd', mismatched == 0,
        observed=mismatched, expected=0,
    ))

    lo, hi = label_window
    outside = int((days.notna() & ~days.between(lo, hi)).sum())
    findings.append(QCFinding.make(
        f"Days-to-event within [{lo}, {hi}]", scope, 'd', outside == 0,
        observed=outside, expected=0,
    ))

    underage = int((pd.to_numeric(cohort['anchor_age'], errors='coerce') < cohort_config.min_age).sum())
    findings.append(QCFinding.make(
        f"Age >= {cohort_config.min_age}", scope, 'd', underage == 0,
        observed=underage, expected=0,
    ))

    inverted = int((cohort['index_icu_intime'] >= cohort['index_icu_outtime']).sum())
    findings.append(QCFinding.make(
        "ICU intime before outtime", scope, 'd', inverted == 0,
        observed=inverted, expected=0,
    ))

    rate = float(labels.mean()) if len(labels) else None
    findings.append(QCFinding.make(
        "Readmission rate", scope, 'info', True,
        observed=rate, details=f"{int(labels.sum()):,} readmitted",
    ))
    return findings


# =============================================================================
# LAYERS
# =============================================================================

def validate_layer(
    layer: str,
    features: pd.DataFrame,
    cohort: pd.DataFrame,
    stats: Optional[Dict] = None,
    qc_config: Optional[QCConfig] = None,
) -> List[QCFinding]:
    """
    Checkpoint for one feature layer.

    Args:
        layer: Layer name
        features: LayerResult.features
        cohort: Cohort table
        stats: LayerResult.stats (provenance mix, implausible counts)
        qc_config: Coverage and label thresholds (default: QC_CONFIG)

    Returns:
        Findings for the layer stage
    """
    qc_config = qc_config or QC_CONFIG
    rules = LAYER_QC_RULES.get(layer, {})
    findings = []

    # (a) rows and keys
    findings.append(QCFinding.make(
        "Row count equals cohort", layer, 'a', len(features) == len(cohort),
        observed=len(features), expected=len(cohort),
    ))
    n_dup = int(features['index_stay_id'].duplicated().sum())
    findings.append(QCFinding.make(
        "Unique index_stay_id", layer, 'a', n_dup == 0,
        observed=n_dup, expected=0,
    ))
    unknown = int((~features['index_stay_id'].isin(cohort['index_stay_id'])).sum())
    findings.append(QCFinding.make(
        "Keys drawn from cohort", layer, 'a', unknown == 0,
        observed=unknown, expected=0,
    ))

    # (b) coverage
    for column in rules.get('coverage', []):
        if column not in features.columns:
            continue
        coverage = _coverage(features[column])
        threshold = qc_config.min_coverage(column)
        findings.append(QCFinding.make(
            f"Coverage {column}", layer, 'b', coverage >= threshold,
            observed=round(coverage, 4), expected=threshold,
            details=f"Actual: {coverage*100:.1f}% (min {threshold*100:.0f}%)",
        ))

    # (c) range
    columns = list(features.columns)
    for column, range_key in range_columns(layer, columns).items():
        values = pd.to_numeric(features[column], errors='coerce')
        violations = int((values.notna() & ~plausible_mask(values, range_key)).sum())
        findings.append(QCFinding.make(
            f"Range {column}", layer, 'c', violations == 0,
            observed=violations, expected=0,
            details="" if violations == 0 else f"{violations:,} values outside {PLAUSIBLE_RANGES[range_key]}",
        ))

    # (d) min <= max
    for low, high in min_max_pairs(columns):
        lo_values = pd.to_numeric(features[low], errors='coerce')
        hi_values = pd.to_numeric(features[high], errors='coerce')
        inverted = int((lo_values > hi_values).sum())
        findings.append(QCFinding.make(
            f"{low} <= {high}", layer, 'd', inverted == 0,
            observed=inverted, expected=0,
        ))

    # (e) label-conditioned sanity
    labels = _labels_for(features, cohort)
    for column in rules.get('label_sanity', []):
        if column in features.columns:
            findings.append(label_difference_finding(layer, column, features[column], labels, qc_config))

    if stats:
        findings.append(QCFinding.make(
            "Provenance mix", layer, 'info', True,
            observed=stats.get('provenance_mix', {}),
        ))
        skipped = stats.get('implausible_skipped') or {}
        if skipped:
            findings.append(QCFinding.make(
                "Implausible values discarded", layer, 'info', True, observed=skipped,
            ))

    return findings


def label_difference_finding(
    scope: str,
    column: str,
    values: pd.Series,
    labels: pd.Series,
    qc_config: Optional[QCConfig] = None,
) -> QCFinding:
    """Warn when a column's mean barely differs between label groups."""
    qc_config = qc_config or QC_CONFIG
    values = pd.to_numeric(values, errors='coerce')
    means = values.groupby(labels.to_numpy()).mean()
    if 0 not in means.index or 1 not in means.index or means.isna().any():
        return QCFinding.make(
            f"Label-conditioned mean {column}", scope, 'info', True,
            details="Skipped: a label group has no values",
        )
    diff = abs(float(means.loc[1]) - float(means.loc[0]))
    return QCFinding.make(
        f"Label-conditioned mean {column}", scope, 'e',
        diff >= qc_config.min_label_difference,
        observed={'label_0': float(means.loc[0]), 'label_1': float(means.loc[1]), 'diff': diff},
        expected=f">= {qc_config.min_label_difference}",
    )


# =============================================================================
# SCHEMA AND FINAL TABLE
# =============================================================================

def validate_schema(layer_columns: Mapping[str, List[str]]) -> List[QCFinding]:
    """Cross-layer schema check before assembly."""
    duplicates = find_duplicate_columns(layer_columns)
    findings = [QCFinding.make(
        "No duplicate published column names", 'schema', 'f', not duplicates,
        observed=duplicates, expected={},
    )]
    missing = [layer for layer in LAYER_ORDER if layer not in layer_columns]
    findings.append(QCFinding.make(
        "All layers declared", 'schema', 'f', not missing,
        observed=missing, expected=[],
    ))
    counts = {layer: len(layer_columns.get(layer, [])) for layer in LAYER_ORDER}
    findings.append(QCFinding.make(
        "Declared column counts", 'schema', 'info', True, observed=counts,
    ))
    return findings


def validate_final(
    features: pd.DataFrame,
    cohort: pd.DataFrame,
    layer_columns: Mapping[str, List[str]],
    qc_config: Optional[QCConfig] = None,
) -> List[QCFinding]:
    """
    Final table checkpoint.

    Args:
        features: Assembled feature table
        cohort: Cohort table
        layer_columns: Layer name -> declared output columns
        qc_config: Thresholds (default: QC_CONFIG)

    Returns:
        Findings for the final stage
    """
    qc_config = qc_config or QC_CONFIG
    scope = 'final'
    findings = []

    findings.append(QCFinding.make(
        "Row count equals cohort", scope, 'a', len(features) == len(cohort),
        observed=len(features), expected=len(cohort),
    ))
    n_dup = int(features.duplicated(subset=KEY_COLUMNS).sum())
    findings.append(QCFinding.make(
        "Unique (subject_id, hadm_id, index_stay_id)", scope, 'a', n_dup == 0,
        observed=n_dup, expected=0,
    ))

    schema = expected_schema(layer_columns)
    matches = list(features.columns) == schema
    findings.append(QCFinding.make(
        "Columns match declared schema", scope, 'f', matches,
        observed=len(features.columns), expected=len(schema),
        details="" if matches else "Column names or order differ from the declared schema",
    ))
    findings.append(QCFinding.make(
        "Labels are the last columns", scope, 'f',
        list(features.columns[-len(LABEL_COLUMNS):]) == LABEL_COLUMNS,
        observed=list(features.columns[-len(LABEL_COLUMNS):]), expected=LABEL_COLUMNS,
    ))

    labels = features[LABEL]
    findings.append(QCFinding.make(
        "Target distribution", scope, 'info', True,
        observed={str(k): int(v) for k, v in labels.value_counts().sort_index().items()},
    ))

    # Availability that differs sharply by label can leak the outcome
    for column in [c for c in features.columns if c.endswith('_available_flag')]:
        rates = features[column].groupby(labels.to_numpy()).mean()
        if 0 not in rates.index or 1 not in rates.index:
            continue
        gap = abs(float(rates.loc[1]) - float(rates.loc[0]))
        findings.append(QCFinding.make(
            f"Availability gap {column}", scope, 'e', gap <= qc_config.max_availability_gap,
            observed=round(gap, 4), expected=f"<= {qc_config.max_availability_gap}",
        ))

    return findings
