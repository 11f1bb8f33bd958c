"""
Layer Builder Base
==================

Shared plumbing for the feature layers: cohort keys, the first-day window,
per-stay lookups into derived tables, flag helpers and the LayerResult
returned by every layer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from ..config.concept_registry import KEY_COLUMNS, BOOKKEEPING_COLUMNS, CHART_ITEM_UNITS
from ..config.pipeline_config import WINDOW_CONFIG, WindowConfig
from ..extractors.source_extractor import SourceStore
from ..processing.precedence_merger import PrecedenceMerger, MergeResult
from ..processing.window_extractor import WindowExtractor

logger = logging.getLogger(__name__)


@dataclass
class LayerResult:
    """Output of one feature layer."""

    name: str
    features: pd.DataFrame
    provenance: pd.DataFrame
    stats: Dict[str, Any] = field(default_factory=dict)


def flag(mask: pd.Series) -> pd.Series:
    """0/1 int flag from a boolean mask; null counts as 0."""
    return mask.fillna(False).astype(bool).astype('int64')


def available_flag(values: pd.Series) -> pd.Series:
    """1 iff the value is non-null."""
    return values.notna().astype('int64')


class LayerBuilder:
    """Base class for the feature layer builders."""

    NAME = ''
    OUTPUT_COLUMNS: List[str] = []

    def __init__(
        self,
        cohort: pd.DataFrame,
        source: SourceStore,
        window_config: Optional[WindowConfig] = None,
        run_timestamp: Optional[pd.Timestamp] = None,
    ):
        """
        Initialize builder.

        Args:
            cohort: Cohort table from CohortBuilder
            source: Read-only source store
            window_config: Window lengths (default: WINDOW_CONFIG)
            run_timestamp: Stamp for feature_extraction_timestamp
        """
        self.cohort = cohort.reset_index(drop=True)
        self.source = source
        self.window_config = window_config or WINDOW_CONFIG
        self.run_timestamp = run_timestamp if run_timestamp is not None else pd.Timestamp.now()

        self.keys = self.cohort[KEY_COLUMNS]
        self.index = pd.Index(self.keys['index_stay_id'], name='index_stay_id')
        self.merger = PrecedenceMerger(self.cohort)
        self.stats: Dict[str, Any] = {}

    # -------------------------------------------------------------------------
    # Shared lookups
    # -------------------------------------------------------------------------

    def first_day_window(self) -> WindowExtractor:
        return WindowExtractor(self.cohort, hours=self.window_config.first_day_hours)

    def cohort_column(self, column: str) -> pd.Series:
        """A cohort column indexed by index_stay_id."""
        return pd.Series(self.cohort[column].array, index=self.index, name=column)

    def empty_series(self, dtype=float) -> pd.Series:
        return pd.Series(float('nan') if dtype is float else None, index=self.index, dtype=dtype)

    def stay_values(self, table: pd.DataFrame, column: str, how: str = 'first') -> pd.Series:
        """
        One numeric value per cohort stay from a stay-keyed table.

        Args:
            table: Table with a stay_id column
            column: Value column
            how: 'first' non-null value, or 'max' / 'min' over the stay's rows

        Returns:
            Float Series indexed by index_stay_id (NaN when no row)
        """
        if table.empty or column not in table.columns:
            return self.empty_series()
        values = table[['stay_id', column]].copy()
        values[column] = pd.to_numeric(values[column], errors='coerce')
        grouped = values.dropna(subset=['stay_id', column]).groupby('stay_id')[column]
        result = getattr(grouped, how)()
        return result.reindex(self.index).astype(float)

    def hadm_values(self, table: pd.DataFrame, column: str) -> pd.Series:
        """One numeric value per cohort stay from an admission-keyed table."""
        if table.empty or column not in table.columns:
            return self.empty_series()
        values = table[['hadm_id', column]].copy()
        values[column] = pd.to_numeric(values[column], errors='coerce')
        per_hadm = values.dropna(subset=['hadm_id', column]).groupby('hadm_id')[column].first()
        mapped = self.keys['hadm_id'].map(per_hadm)
        return pd.Series(mapped.to_numpy(dtype=float, na_value=float('nan')), index=self.index)

    def chart_events(self, itemids: List[int]) -> pd.DataFrame:
        """chartevents rows for the given items, with a 'unit' column.

        Items with a fixed unit (CHART_ITEM_UNITS) use it; others keep valueuom.
        """
        events = self.source.table('chartevents')
        events = events[events['itemid'].isin(itemids)].copy()
        declared = events['itemid'].map(CHART_ITEM_UNITS)
        events['unit'] = declared.where(declared.notna(), events['valueuom'])
        return events

    def resolve(self, concept: str, candidates: Dict[str, pd.Series], **kwargs) -> MergeResult:
        return self.merger.resolve(concept, candidates, **kwargs)

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def build_features(self) -> pd.DataFrame:
        """Layer-specific features, indexed by index_stay_id."""
        raise NotImplementedError

    def build(self) -> LayerResult:
        """
        Build the layer.

        Returns:
            LayerResult with one row per cohort key in OUTPUT_COLUMNS order
        """
        logger.info(f"Building {self.NAME} layer for {len(self.cohort):,} stays")
        features = self.build_features()
        return self.finish(features)

    def finish(self, features: pd.DataFrame) -> LayerResult:
        """Align features to the cohort keys and the declared column order."""
        missing = [c for c in self.OUTPUT_COLUMNS if c not in features.columns]
        if missing:
            raise KeyError(f"{self.NAME} layer did not produce columns: {missing}")

        frame = self.keys.copy()
        aligned = features.reindex(self.index)
        for col in self.OUTPUT_COLUMNS:
            frame[col] = aligned[col].array
        frame[BOOKKEEPING_COLUMNS[0]] = self.run_timestamp

        provenance = self.merger.provenance_frame()
        self.stats.setdefault('n_rows', len(frame))
        self.stats['provenance_mix'] = self.merger.provenance_mix()
        self.stats['implausible_skipped'] = {
            concept: counts for concept, counts in self.merger.rejected.items()
            if any(counts.values())
        }

        logger.info(f"{self.NAME}: {len(frame):,} rows, {len(self.OUTPUT_COLUMNS)} features")
        return LayerResult(self.NAME, frame, provenance, self.stats)
