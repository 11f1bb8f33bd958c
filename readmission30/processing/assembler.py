"""
Feature Table Assembler
=======================

Join every feature layer onto the cohort key and publish one wide table.

- Layers are joined in LAYER_ORDER, one-to-one on KEY_COLUMNS
- A column claimed by several layers keeps its plain name in the owning
  layer (CANONICAL_OWNERS); every other copy gets the owner's suffix
- Bookkeeping columns move to the provenance table
- Label columns go last

The output schema is computed from the layers' declared columns, never from
the data, so any drift raises SchemaViolationError.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping

import pandas as pd

from ..config.concept_registry import (
    BOOKKEEPING_COLUMNS,
    CANONICAL_OWNERS,
    KEY_COLUMNS,
    LABEL_COLUMNS,
    LAYER_ORDER,
)

logger = logging.getLogger(__name__)

PROVENANCE_TABLE_COLUMNS = KEY_COLUMNS + [
    'layer', 'concept', 'provider', 'provenance', 'feature_extraction_timestamp',
]


class SchemaViolationError(RuntimeError):
    """Duplicate column names or row multiplicity reaching the assembler."""


@dataclass
class AssembledTable:
    """Final wide features plus the long provenance table."""

    features: pd.DataFrame
    provenance: pd.DataFrame


# =============================================================================
# STATIC SCHEMA
# =============================================================================

def owned_name(column: str, layer: str) -> str:
    """Published name of a layer's column under the canonical owner table."""
    if column in CANONICAL_OWNERS:
        owner, suffix = CANONICAL_OWNERS[column]
        if owner != layer:
            return f'{column}{suffix}'
    return column


def published_columns(layer: str, columns: List[str]) -> List[str]:
    """A layer's feature columns as they appear in the final table (labels excluded)."""
    return [
        owned_name(column, layer) for column in columns
        if column not in LABEL_COLUMNS and column not in KEY_COLUMNS
    ]


def find_duplicate_columns(layer_columns: Mapping[str, List[str]]) -> Dict[str, List[str]]:
    """
    Published names claimed by more than one layer.

    Args:
        layer_columns: Layer name -> declared output columns

    Returns:
        Column name -> layers publishing it (empty when the schema is clean)
    """
    claims: Dict[str, List[str]] = {}
    for layer in LAYER_ORDER:
        for column in published_columns(layer, layer_columns.get(layer, [])):
            claims.setdefault(column, []).append(layer)

    # A layer repeating its own column shows up as [layer, layer]
    return {c: layers for c, layers in claims.items() if len(layers) > 1}


def expected_schema(layer_columns: Mapping[str, List[str]]) -> List[str]:
    """
    Final column list: keys, each layer's published columns in LAYER_ORDER,
    then the labels.

    Args:
        layer_columns: Layer name -> declared output columns

    Returns:
        Ordered column names of the assembled feature table
    """
    unknown = set(layer_columns) - set(LAYER_ORDER)
    if unknown:
        raise SchemaViolationError(f"Layers not in assembly order: {sorted(unknown)}")

    schema = list(KEY_COLUMNS)
    for layer in LAYER_ORDER:
        schema.extend(published_columns(layer, layer_columns.get(layer, [])))
    schema.extend(LABEL_COLUMNS)
    return schema


# =============================================================================
# ASSEMBLY
# =============================================================================

def _check_rows(name: str, frame: pd.DataFrame, cohort_keys: pd.DataFrame):
    if frame['index_stay_id'].duplicated().any():
        n = int(frame['index_stay_id'].duplicated().sum())
        raise SchemaViolationError(f"{name}: {n:,} duplicate index_stay_id rows")
    if len(frame) != len(cohort_keys):
        raise SchemaViolationError(
            f"{name}: {len(frame):,} rows for a cohort of {len(cohort_keys):,}"
        )
    missing = set(cohort_keys['index_stay_id']) - set(frame['index_stay_id'])
    if missing:
        raise SchemaViolationError(f"{name}: {len(missing):,} cohort stays have no row")


def _layer_provenance(name: str, result) -> pd.DataFrame:
    provenance = result.provenance
    if provenance is None or provenance.empty:
        return pd.DataFrame(columns=PROVENANCE_TABLE_COLUMNS)
    provenance = provenance.copy()
    provenance['layer'] = name
    provenance['concept'] = provenance['concept'].map(lambda c: owned_name(c, name))
    stamp_column = BOOKKEEPING_COLUMNS[0]
    stamps = result.features[stamp_column] if stamp_column in result.features else None
    provenance[stamp_column] = stamps.iloc[0] if stamps is not None and len(stamps) else pd.NaT
    return provenance[PROVENANCE_TABLE_COLUMNS]


def assemble(
    cohort: pd.DataFrame,
    layer_results: Mapping[str, object],
    layer_columns: Mapping[str, List[str]],
) -> AssembledTable:
    """
    Join all layer outputs into the final feature table.

    Args:
        cohort: Cohort table (defines the expected rows)
        layer_results: Layer name -> LayerResult
        layer_columns: Layer name -> declared output columns

    Returns:
        AssembledTable with features in expected_schema() order

    Raises:
        SchemaViolationError: Missing layer, duplicate names, row
            multiplicity, or a table that does not match the declared schema
    """
    missing_layers = [layer for layer in LAYER_ORDER if layer not in layer_results]
    if missing_layers:
        raise SchemaViolationError(f"Missing layer outputs: {missing_layers}")

    duplicates = find_duplicate_columns(layer_columns)
    if duplicates:
        raise SchemaViolationError(f"Duplicate column names across layers: {duplicates}")

    cohort_keys = cohort[KEY_COLUMNS].reset_index(drop=True)
    _check_rows('cohort', cohort_keys, cohort_keys)

    table = cohort_keys.copy()
    provenance_parts = []

    for name in LAYER_ORDER:
        result = layer_results[name]
        frame = result.features.drop(columns=BOOKKEEPING_COLUMNS, errors='ignore')
        _check_rows(name, frame, cohort_keys)

        renames = {c: owned_name(c, name) for c in frame.columns if c not in KEY_COLUMNS}
        frame = frame.rename(columns=renames)

        overlap = (set(frame.columns) & set(table.columns)) - set(KEY_COLUMNS)
        if overlap:
            raise SchemaViolationError(f"{name}: columns already published: {sorted(overlap)}")

        try:
            table = table.merge(frame, on=KEY_COLUMNS, how='outer', validate='one_to_one')
        except pd.errors.MergeError as exc:
            raise SchemaViolationError(f"{name}: {exc}") from exc

        if len(table) != len(cohort_keys):
            raise SchemaViolationError(
                f"{name}: join produced {len(table):,} rows for a cohort of {len(cohort_keys):,}"
            )
        provenance_parts.append(_layer_provenance(name, result))
        logger.info(f"Joined {name}: {len(frame.columns) - len(KEY_COLUMNS)} columns")

    ordered = [c for c in table.columns if c not in LABEL_COLUMNS] + LABEL_COLUMNS
    missing_labels = [c for c in LABEL_COLUMNS if c not in table.columns]
    if missing_labels:
        raise SchemaViolationError(f"Label columns missing: {missing_labels}")
    table = table[ordered]

    schema = expected_schema(layer_columns)
    if list(table.columns) != schema:
        extra = [c for c in table.columns if c not in schema]
        absent = [c for c in schema if c not in table.columns]
        raise SchemaViolationError(
            f"Assembled columns do not match declared schema (extra={extra}, missing={absent})"
        )

    provenance_parts = [p for p in provenance_parts if not p.empty]
    provenance = (
        pd.concat(provenance_parts, ignore_index=True)
        if provenance_parts else pd.DataFrame(columns=PROVENANCE_TABLE_COLUMNS)
    )

    logger.info(f"Assembled {len(table):,} rows x {len(table.columns):,} columns")
    return AssembledTable(table, provenance)
