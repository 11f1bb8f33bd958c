"""
Source Precedence Merger
========================

Resolves one value per (cohort key, concept) from an ordered list of
candidate providers:

    trusted_derived -> locally_computed -> raw_fallback -> absent

The provider order per concept is static (SOURCE_PRECEDENCE). The first
provider with a non-null, range-valid value wins, and its name and tier are
recorded as provenance.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pandas as pd

from ..config.concept_registry import (
    SOURCE_PRECEDENCE,
    PROVIDER_TIERS,
    PLAUSIBLE_RANGES,
    KEY_COLUMNS,
    ABSENT,
)
from .normalizer import plausible_mask, within_plausible_range

logger = logging.getLogger(__name__)

PROVENANCE_COLUMNS = KEY_COLUMNS + ['concept', 'provider', 'provenance']


@dataclass(frozen=True)
class Provider:
    """A named candidate source and its provenance tier."""

    name: str
    tier: str

    @classmethod
    def from_registry(cls, name: str) -> 'Provider':
        return cls(name=name, tier=PROVIDER_TIERS[name])


@dataclass
class MergeResult:
    """Resolved values for one concept, indexed by index_stay_id."""

    concept: str
    values: pd.Series
    providers: pd.Series
    provenance: pd.Series
    n_rejected: Dict[str, int]


def precedence_for(concept: str) -> List[Provider]:
    """Ordered providers for a concept."""
    if concept not in SOURCE_PRECEDENCE:
        raise KeyError(f"No source precedence declared for concept: {concept}")
    return [Provider.from_registry(name) for name in SOURCE_PRECEDENCE[concept]['providers']]


def range_key_for(concept: str) -> str:
    return SOURCE_PRECEDENCE[concept]['range']


def resolve_value(concept: str, candidates: Dict[str, Optional[float]]) -> Tuple[Optional[float], Optional[str], str]:
    """
    Resolve a single value from provider candidates.

    Args:
        concept: Concept with a declared precedence
        candidates: Provider name -> candidate value (missing providers allowed)

    Returns:
        (value, provider name, provenance tier); (None, None, 'absent') when
        no provider supplies a range-valid value
    """
    range_key = range_key_for(concept)
    for provider in precedence_for(concept):
        value = candidates.get(provider.name)
        if value is None or pd.isna(value):
            continue
        if within_plausible_range(value, range_key):
            return value, provider.name, provider.tier
    return None, None, ABSENT


class PrecedenceMerger:
    """Vectorized precedence resolution over a cohort, with provenance log."""

    def __init__(self, cohort: pd.DataFrame):
        """
        Initialize merger.

        Args:
            cohort: Cohort table; KEY_COLUMNS define the output rows
        """
        self.keys = cohort[KEY_COLUMNS].reset_index(drop=True)
        self.index = pd.Index(self.keys['index_stay_id'], name='index_stay_id')
        self._records: List[pd.DataFrame] = []
        self.rejected: Dict[str, Dict[str, int]] = {}

    def resolve(
        self,
        concept: str,
        candidates: Dict[str, pd.Series],
        record: bool = True,
        output_name: Optional[str] = None,
    ) -> MergeResult:
        """
        Resolve a concept for every cohort stay.

        Args:
            concept: Concept with a declared precedence
            candidates: Provider name -> Series indexed by index_stay_id.
                Providers not supplied are treated as returning null.
            record: Whether to append the result to the provenance log
            output_name: Column name to log (defaults to the concept)

        Returns:
            MergeResult with values, winning provider and tier per stay
        """
        unknown = set(candidates) - set(SOURCE_PRECEDENCE.get(concept, {}).get('providers', []))
        if unknown:
            raise KeyError(f"{concept}: providers not in declared precedence: {sorted(unknown)}")

        range_key = range_key_for(concept)
        values = pd.Series(float('nan'), index=self.index, dtype=float)
        providers = pd.Series(None, index=self.index, dtype=object)
        n_rejected: Dict[str, int] = {}

        for provider in precedence_for(concept):
            candidate = candidates.get(provider.name)
            if candidate is None:
                continue
            candidate = pd.to_numeric(candidate, errors='coerce').reindex(self.index).astype(float)
            plausible = plausible_mask(candidate, range_key)
            n_rejected[provider.name] = int((candidate.notna() & ~plausible).sum())

            take = providers.isna() & plausible
            values[take] = candidate[take]
            providers[take] = provider.name

        provenance = providers.map(PROVIDER_TIERS).fillna(ABSENT)

        for name, count in n_rejected.items():
            if count:
                logger.info(f"{concept}: {count:,} implausible values from {name} skipped")

        result = MergeResult(concept, values, providers, provenance, n_rejected)
        if record:
            self.record(result, output_name or concept)
        self.rejected[output_name or concept] = n_rejected
        return result

    def record(self, result: MergeResult, output_name: str):
        """Append a resolved concept to the provenance log."""
        frame = self.keys.copy()
        frame['concept'] = output_name
        frame['provider'] = result.providers.to_numpy()
        frame['provenance'] = result.provenance.to_numpy()
        self._records.append(frame)

    def provenance_frame(self) -> pd.DataFrame:
        """Long provenance table for every recorded concept."""
        if not self._records:
            return pd.DataFrame(columns=PROVENANCE_COLUMNS)
        return pd.concat(self._records, ignore_index=True)[PROVENANCE_COLUMNS]

    def provenance_mix(self) -> Dict[str, Dict[str, int]]:
        """Per concept, count of stays resolved by each tier."""
        frame = self.provenance_frame()
        if frame.empty:
            return {}
        counts = frame.groupby(['concept', 'provenance']).size()
        mix: Dict[str, Dict[str, int]] = {}
        for (concept, tier), n in counts.items():
            mix.setdefault(concept, {})[tier] = int(n)
        return mix


def check_precedence_config() -> List[str]:
    """Problems in the static precedence table (empty list when consistent)."""
    problems = []
    for concept, entry in SOURCE_PRECEDENCE.items():
        if entry['range'] not in PLAUSIBLE_RANGES:
            problems.append(f"{concept}: no plausible range '{entry['range']}'")
        if not entry['providers']:
            problems.append(f"{concept}: empty provider list")
        for name in entry['providers']:
            if name not in PROVIDER_TIERS:
                problems.append(f"{concept}: provider '{name}' has no tier")
        if len(set(entry['providers'])) != len(entry['providers']):
            problems.append(f"{concept}: duplicate provider")
    for key, (lo, hi) in PLAUSIBLE_RANGES.items():
        if lo > hi:
            problems.append(f"range '{key}' is inverted ({lo} > {hi})")
    return problems
