"""
Readmission30 Validation
========================

QC harness and declarative checkpoint rules.
"""

from .qc_harness import (
    QCFinding,
    QCReport,
    QCHarness,
    QCHaltError,
    FATAL,
    WARNING,
    INFO,
)

from .layer_validators import (
    LAYER_QC_RULES,
    validate_config,
    validate_cohort,
    validate_layer,
    validate_schema,
    validate_final,
)

__all__ = [
    'QCFinding',
    'QCReport',
    'QCHarness',
    'QCHaltError',
    'FATAL',
    'WARNING',
    'INFO',
    'LAYER_QC_RULES',
    'validate_config',
    'validate_cohort',
    'validate_layer',
    'validate_schema',
    'validate_final',
]
