"""
Artifact Writer
===============

Versioned, immutable output per run under <output_dir>/<run_id>/:

- cohort.parquet
- features.parquet
- provenance.parquet
- qc_report.json (or qc_report.yaml)

A halted run writes only the QC report. An existing run directory is never
overwritten.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
import yaml

from ..validation.qc_harness import QCReport

logger = logging.getLogger(__name__)

REPORT_FORMATS = ('json', 'yaml')


def default_run_id(now: Optional[datetime] = None) -> str:
    """Run id from the run timestamp, e.g. 20240131T081500."""
    return (now or datetime.now()).strftime('%Y%m%dT%H%M%S')


class ArtifactWriter:
    """Writes one run's artifacts into its own directory."""

    def __init__(self, output_dir: Path, run_id: Optional[str] = None, report_format: str = 'json'):
        """
        Initialize writer.

        Args:
            output_dir: Parent directory for all runs
            run_id: Run directory name (default: run timestamp)
            report_format: 'json' or 'yaml'
        """
        if report_format not in REPORT_FORMATS:
            raise ValueError(f"report_format must be one of {REPORT_FORMATS}, got {report_format!r}")
        self.output_dir = Path(output_dir)
        self.run_id = run_id or default_run_id()
        self.report_format = report_format
        self.run_dir = self.output_dir / self.run_id
        self._created = False

    def _ensure_run_dir(self):
        if self._created:
            return
        if self.run_dir.exists():
            raise FileExistsError(f"Run directory already exists: {self.run_dir}")
        self.run_dir.mkdir(parents=True)
        self._created = True

    def write_table(self, df: pd.DataFrame, name: str) -> Path:
        self._ensure_run_dir()
        path = self.run_dir / f"{name}.parquet"
        df.to_parquet(path, index=False)
        logger.info(f"Saved {len(df):,} rows to {path}")
        return path

    def write_report(self, report: QCReport) -> Path:
        """Write the QC report in the configured format."""
        self._ensure_run_dir()
        path = self.run_dir / f"qc_report.{self.report_format}"
        payload = report.to_dict()
        with open(path, 'w') as f:
            if self.report_format == 'json':
                json.dump(payload, f, indent=2)
            else:
                yaml.safe_dump(payload, f, sort_keys=False, allow_unicode=True)
        logger.info(f"Saved QC report to {path}")
        return path

    def publish(
        self,
        cohort: pd.DataFrame,
        features: pd.DataFrame,
        provenance: pd.DataFrame,
        report: QCReport,
    ) -> Dict[str, Path]:
        """
        Write every artifact of a successful run.

        Returns:
            Artifact name -> path
        """
        return {
            'cohort': self.write_table(cohort, 'cohort'),
            'features': self.write_table(features, 'features'),
            'provenance': self.write_table(provenance, 'provenance'),
            'qc_report': self.write_report(report),
        }
