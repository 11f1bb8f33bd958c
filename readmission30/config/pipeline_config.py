"""
ICU Readmission Pipeline Configuration
======================================

Central configuration for cohort selection, time windows, QC thresholds
and parallel execution.
"""

from pathlib import Path
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Optional
import multiprocessing as mp

import yaml


# =============================================================================
# PATH CONFIGURATION
# =============================================================================

PACKAGE_ROOT = Path(__file__).resolve().parent.parent
PROJECT_ROOT = PACKAGE_ROOT.parent
DATA_DIR = PROJECT_ROOT / "data"

# Read-only source tables (one parquet/csv file per table)
SOURCE_DIR = DATA_DIR / "source"

# Versioned run artifacts land in OUTPUT_DIR / <run_id>
OUTPUT_DIR = PROJECT_ROOT / "outputs"

# Config files
CONFIG_DIR = PACKAGE_ROOT / "config"
ICD_COMORBIDITY_MAP_YAML = CONFIG_DIR / "icd_comorbidity_map.yaml"


class ConfigurationError(ValueError):
    """Raised for malformed override files or inconsistent static tables."""


# =============================================================================
# TEMPORAL CONFIGURATION
# =============================================================================

@dataclass
class WindowConfig:
    """Time windows used by the cohort label and every feature layer."""

    # First-day window anchored at ICU intime
    first_day_hours: int = 24

    # Trailing utilization lookbacks (days, strictly before the anchor)
    lookback_days: Dict[str, int] = field(default_factory=lambda: {
        'recent_7d': 7,
        'recent_30d': 30,
        'prior_12m': 365,
    })

    # Readmission label window, inclusive on both ends (days)
    readmission_min_days: int = 1
    readmission_max_days: int = 30


WINDOW_CONFIG = WindowConfig()


# =============================================================================
# COHORT CONFIGURATION
# =============================================================================

@dataclass
class CohortConfig:
    """Inclusion criteria for index ICU stay selection."""

    min_age: int = 18
    min_icu_los_minutes: int = 1440


COHORT_CONFIG = CohortConfig()


# =============================================================================
# QC CONFIGURATION
# =============================================================================

@dataclass
class QCConfig:
    """Thresholds for coverage and label-conditioned checks."""

    default_min_coverage: float = 0.5

    # Column -> minimum fraction of non-null rows
    coverage_overrides: Dict[str, float] = field(default_factory=lambda: {
        'height_cm': 0.85,
        'weight_kg': 0.85,
        'gcs_total_first_24h': 0.90,
        'hr_first_24h_mean': 0.90,
    })

    # Minimum absolute difference of group means (label 1 vs 0)
    min_label_difference: float = 0.01

    # Largest tolerated gap between availability rates by label
    max_availability_gap: float = 0.10

    def min_coverage(self, column: str) -> float:
        return self.coverage_overrides.get(column, self.default_min_coverage)


QC_CONFIG = QCConfig()


# =============================================================================
# PARALLEL CONFIGURATION
# =============================================================================

@dataclass
class ParallelConfig:
    """Layer fan-out settings (joblib)."""

    n_jobs: int = max(1, mp.cpu_count() - 1)
    backend: str = "loky"


PARALLEL_CONFIG = ParallelConfig()


# =============================================================================
# CONFIG BUNDLE
# =============================================================================

@dataclass
class PipelineConfig:
    """All tunable sections consumed by one pipeline run."""

    windows: WindowConfig = field(default_factory=lambda: replace(WINDOW_CONFIG))
    cohort: CohortConfig = field(default_factory=lambda: replace(COHORT_CONFIG))
    qc: QCConfig = field(default_factory=lambda: replace(QC_CONFIG))
    parallel: ParallelConfig = field(default_factory=lambda: replace(PARALLEL_CONFIG))

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict view for the QC report."""
        return asdict(self)


def load_pipeline_config(path: Optional[Path] = None) -> PipelineConfig:
    """
    Build a PipelineConfig, applying overrides from a YAML file.

    The file maps section names (windows, cohort, qc, parallel) to field
    overrides. Dict-valued fields are merged key by key.

    Args:
        path: Optional override file; None returns the defaults

    Returns:
        PipelineConfig with copies of the module singletons
    """
    config = PipelineConfig()
    if path is None:
        return config

    with open(path, 'r') as f:
        overrides = yaml.safe_load(f) or {}

    if not isinstance(overrides, dict):
        raise ConfigurationError(f"{path}: expected a mapping of sections")

    for section_name, values in overrides.items():
        if not hasattr(config, section_name):
            raise ConfigurationError(f"Unknown config section: {section_name}")
        if not isinstance(values, dict):
            raise ConfigurationError(f"Section {section_name} must be a mapping")

        section = getattr(config, section_name)
        for key, value in values.items():
            if not hasattr(section, key):
                raise ConfigurationError(f"Unknown key {section_name}.{key}")
            current = getattr(section, key)
            if isinstance(current, dict):
                if not isinstance(value, dict):
                    raise ConfigurationError(f"{section_name}.{key} must be a mapping")
                merged = dict(current)
                merged.update(value)
                value = merged
            setattr(section, key, value)

    return config


def load_icd_comorbidity_map(path: Optional[Path] = None) -> Dict:
    """Load the ICD prefix -> comorbidity map."""
    with open(path or ICD_COMORBIDITY_MAP_YAML, 'r') as f:
        return yaml.safe_load(f)

