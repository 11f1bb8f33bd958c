"""
Readmission30 Exporters
=======================

Versioned run artifacts: cohort, features, provenance and the QC report.
"""

from .artifact_writer import ArtifactWriter, default_run_id

__all__ = ['ArtifactWriter', 'default_run_id']
