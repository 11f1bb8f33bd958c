"""
Readmission30
=============

Cohort and feature pipeline for 30-day ICU readmission prediction.

- processing/: cohort selection, normalizer, window extractor,
  precedence merger, assembler
- transformers/: one builder per feature layer
- validation/: QC harness and checkpoint rules
- exporters/: versioned run artifacts
"""

__version__ = "0.1.0"
