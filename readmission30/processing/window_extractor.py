"""
Temporal Window Extractor
=========================

Pulls windowed values out of irregular event streams for every cohort stay.

Window: [anchor + offset, anchor + offset + hours)

Inclusion rules:
- Instant observations (charted values): window_start <= t < window_end
- Interval observations (infusions, ventilation): strict overlap,
  start < window_end AND end > window_start

Every value passes through the normalizer before aggregation; values that
fail conversion or plausibility are left out of the aggregates and counted
in n_implausible.
"""

import logging
from typing import Optional

import pandas as pd

from ..config.concept_registry import KEY_COLUMNS
from ..config.pipeline_config import WINDOW_CONFIG
from .normalizer import normalize_series

logger = logging.getLogger(__name__)

AGGREGATE_COLUMNS = ['min', 'max', 'mean', 'first', 'last', 'n_observations', 'n_implausible']

# How an event row is matched to a cohort stay
JOIN_MODES = ('stay', 'admission', 'stay_or_admission', 'subject')

_WINDOW_COLUMNS = ['index_stay_id', 'window_start', 'window_end']


def instant_in_window(times, window_start, window_end):
    """Half-open instant rule: window_start <= t < window_end."""
    return (times >= window_start) & (times < window_end)


def interval_overlaps_window(starts, ends, window_start, window_end):
    """Strict interval overlap: start < window_end and end > window_start."""
    return (starts < window_end) & (ends > window_start)


class WindowExtractor:
    """Windowed selection and aggregation anchored on a cohort timestamp."""

    def __init__(
        self,
        cohort: pd.DataFrame,
        hours: Optional[float] = None,
        anchor_column: str = 'index_icu_intime',
        offset_hours: float = 0,
    ):
        """
        Initialize extractor.

        Args:
            cohort: Cohort table with KEY_COLUMNS and the anchor column
            hours: Window length (default: first-day window)
            anchor_column: Cohort timestamp the window is anchored on
            offset_hours: Shift of window start relative to the anchor
                (negative for lookbacks)
        """
        self.hours = WINDOW_CONFIG.first_day_hours if hours is None else hours
        self.anchor_column = anchor_column

        windows = cohort[KEY_COLUMNS + [anchor_column]].copy()
        anchor = pd.to_datetime(windows.pop(anchor_column), errors='coerce')
        windows['window_start'] = anchor + pd.Timedelta(hours=offset_hours)
        windows['window_end'] = windows['window_start'] + pd.Timedelta(hours=self.hours)
        self.windows = windows.reset_index(drop=True)
        self.index = pd.Index(self.windows['index_stay_id'], name='index_stay_id')

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def _join(self, events: pd.DataFrame, match: str) -> pd.DataFrame:
        """Attach each event to the cohort window(s) it can belong to."""
        if match not in JOIN_MODES:
            raise ValueError(f"Unknown join mode: {match}")

        if events.empty:
            columns = list(dict.fromkeys(list(events.columns) + KEY_COLUMNS + _WINDOW_COLUMNS))
            return pd.DataFrame(columns=columns)

        if match == 'stay':
            return events.merge(
                self.windows[_WINDOW_COLUMNS],
                left_on='stay_id', right_on='index_stay_id', how='inner',
            )
        if match == 'admission':
            return events.merge(
                self.windows[['subject_id', 'hadm_id'] + _WINDOW_COLUMNS],
                on=['subject_id', 'hadm_id'], how='inner',
            )
        if match == 'subject':
            return events.merge(
                self.windows[['subject_id'] + _WINDOW_COLUMNS],
                on='subject_id', how='inner',
            )

        # stay_or_admission: stay_id match, or null stay_id with same admission
        has_stay = events['stay_id'].notna()
        by_stay = self._join(events[has_stay], 'stay')
        by_admission = self._join(events[~has_stay], 'admission')
        parts = [part for part in (by_stay, by_admission) if not part.empty]
        if not parts:
            return by_stay
        return pd.concat(parts, ignore_index=True)

    def select_instant(
        self,
        events: pd.DataFrame,
        time_column: str = 'charttime',
        match: str = 'stay',
    ) -> pd.DataFrame:
        """Events whose timestamp falls inside each stay's window."""
        joined = self._join(events, match)
        if joined.empty:
            return joined
        times = pd.to_datetime(joined[time_column], errors='coerce')
        mask = instant_in_window(times, joined['window_start'], joined['window_end'])
        return joined[mask.fillna(False).astype(bool)]

    def select_intervals(
        self,
        events: pd.DataFrame,
        start_column: str = 'starttime',
        end_column: str = 'endtime',
        match: str = 'stay',
    ) -> pd.DataFrame:
        """Interval events overlapping each stay's window.

        Rows with a null start or end are ignored.
        """
        joined = self._join(events, match)
        if joined.empty:
            return joined
        starts = pd.to_datetime(joined[start_column], errors='coerce')
        ends = pd.to_datetime(joined[end_column], errors='coerce')
        valid = starts.notna() & ends.notna()
        mask = valid & interval_overlaps_window(
            starts, ends, joined['window_start'], joined['window_end']
        )
        return joined[mask.fillna(False).astype(bool)]

    # -------------------------------------------------------------------------
    # Per-stay outputs
    # -------------------------------------------------------------------------

    def flag_any(self, selected: pd.DataFrame) -> pd.Series:
        """0/1 per cohort stay: any selected row present."""
        present = set(selected['index_stay_id'].dropna()) if not selected.empty else set()
        return pd.Series(
            [1 if stay in present else 0 for stay in self.index],
            index=self.index, dtype='int64',
        )

    def aggregate(
        self,
        events: pd.DataFrame,
        concept: str,
        value_column: str = 'valuenum',
        time_column: str = 'charttime',
        unit_column: Optional[str] = None,
        match: str = 'stay',
    ) -> pd.DataFrame:
        """
        Aggregate normalized instant observations inside the window.

        Args:
            events: Event rows already filtered to the concept's items
            concept: Registry concept used for unit conversion and bounds
            value_column: Raw value column
            time_column: Observation timestamp column
            unit_column: Declared unit column (None: infer from magnitude)
            match: Join mode to cohort stays

        Returns:
            DataFrame indexed by index_stay_id (every cohort stay) with
            min, max, mean, first, last, n_observations, n_implausible
        """
        selected = self.select_instant(events, time_column, match)
        if not selected.empty:
            raw = pd.to_numeric(selected[value_column], errors='coerce')
            selected = selected[raw.notna()]

        if selected.empty:
            result = pd.DataFrame(index=self.index, columns=AGGREGATE_COLUMNS, dtype=float)
            result['n_observations'] = 0
            result['n_implausible'] = 0
            return result

        units = selected[unit_column] if unit_column else None
        values = normalize_series(selected[value_column], concept, units)
        selected = selected.assign(
            _value=values,
            _implausible=values.isna(),
            _time=pd.to_datetime(selected[time_column], errors='coerce'),
        )

        valid = selected[~selected['_implausible']].sort_values(
            ['index_stay_id', '_time', '_value'], kind='mergesort'
        )
        grouped = valid.groupby('index_stay_id')['_value']
        result = pd.DataFrame({
            'min': grouped.min(),
            'max': grouped.max(),
            'mean': grouped.mean(),
            'first': grouped.first(),
            'last': grouped.last(),
            'n_observations': grouped.size(),
        }).reindex(self.index)

        implausible = selected.groupby('index_stay_id')['_implausible'].sum()
        result['n_observations'] = result['n_observations'].fillna(0).astype('int64')
        result['n_implausible'] = implausible.reindex(self.index).fillna(0).astype('int64')

        n_dropped = int(result['n_implausible'].sum())
        if n_dropped:
            logger.info(f"{concept}: discarded {n_dropped:,} implausible values")

        return result[AGGREGATE_COLUMNS]

    def latest_at_or_before(
        self,
        events: pd.DataFrame,
        concept: str,
        value_column: str = 'valuenum',
        time_column: str = 'charttime',
        unit_column: Optional[str] = None,
        match: str = 'stay',
    ) -> pd.Series:
        """Most recent plausible value charted at or before the window start."""
        joined = self._join(events, match)
        if joined.empty:
            return pd.Series(float('nan'), index=self.index, dtype=float)

        times = pd.to_datetime(joined[time_column], errors='coerce')
        joined = joined[(times <= joined['window_start']).fillna(False).astype(bool)]
        if joined.empty:
            return pd.Series(float('nan'), index=self.index, dtype=float)

        units = joined[unit_column] if unit_column else None
        values = normalize_series(joined[value_column], concept, units)
        joined = joined.assign(
            _value=values,
            _time=pd.to_datetime(joined[time_column], errors='coerce'),
        ).dropna(subset=['_value'])

        latest = (
            joined.sort_values(['index_stay_id', '_time', '_value'], kind='mergesort')
            .groupby('index_stay_id')['_value']
            .last()
        )
        return latest.reindex(self.index).astype(float)
