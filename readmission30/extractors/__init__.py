"""
Readmission30 Extractors
========================

Read-only access to the clinical source tables.
"""

from .source_extractor import (
    SourceStore,
    SourceTableError,
    TABLE_SCHEMAS,
    REQUIRED_TABLES,
)

__all__ = [
    'SourceStore',
    'SourceTableError',
    'TABLE_SCHEMAS',
    'REQUIRED_TABLES',
]
