"""
Readmission30 Configuration Package
"""

from .pipeline_config import (
    # Paths
    PROJECT_ROOT,
    DATA_DIR,
    SOURCE_DIR,
    OUTPUT_DIR,
    ICD_COMORBIDITY_MAP_YAML,

    # Configs
    WINDOW_CONFIG,
    COHORT_CONFIG,
    QC_CONFIG,
    PARALLEL_CONFIG,
    PipelineConfig,
    ConfigurationError,

    # Helpers
    load_pipeline_config,
    load_icd_comorbidity_map,
)

__all__ = [
    'PROJECT_ROOT',
    'DATA_DIR',
    'SOURCE_DIR',
    'OUTPUT_DIR',
    'ICD_COMORBIDITY_MAP_YAML',
    'WINDOW_CONFIG',
    'COHORT_CONFIG',
    'QC_CONFIG',
    'PARALLEL_CONFIG',
    'PipelineConfig',
    'ConfigurationError',
    'load_pipeline_config',
    'load_icd_comorbidity_map',
]
