"""
Readmission30 Processing
========================

Cohort selection and the shared engines every feature layer composes:
unit normalization, time-window aggregation, source precedence, assembly.
"""

from .normalizer import (
    to_canonical_unit,
    within_plausible_range,
    normalize_value,
    plausible_mask,
    normalize_series,
)

from .window_extractor import (
    WindowExtractor,
    instant_in_window,
    interval_overlaps_window,
)

from .precedence_merger import (
    PrecedenceMerger,
    MergeResult,
    resolve_value,
    check_precedence_config,
)

from .cohort_builder import (
    CohortBuilder,
    CohortResult,
    build_cohort,
    audit_cohort,
    compute_readmission_label,
)

from .assembler import (
    AssembledTable,
    SchemaViolationError,
    assemble,
    expected_schema,
    find_duplicate_columns,
)

__all__ = [
    # Normalizer
    'to_canonical_unit',
    'within_plausible_range',
    'normalize_value',
    'plausible_mask',
    'normalize_series',
    # Window extractor
    'WindowExtractor',
    'instant_in_window',
    'interval_overlaps_window',
    # Precedence merger
    'PrecedenceMerger',
    'MergeResult',
    'resolve_value',
    'check_precedence_config',
    # Cohort
    'CohortBuilder',
    'CohortResult',
    'build_cohort',
    'audit_cohort',
    'compute_readmission_label',
    # Assembler
    'AssembledTable',
    'SchemaViolationError',
    'assemble',
    'expected_schema',
    'find_duplicate_columns',
]
