"""
30-Day ICU Readmission Pipeline
===============================

Runs the fixed DAG once per cohort refresh:

    Cohort -> (parallel) feature layers -> Assembler -> final QC -> artifacts

A QC checkpoint follows the config check, the cohort, every layer (as soon
as it finishes), the cross-layer schema and the assembled table. The first
fatal finding halts the run; a halted run writes only its QC report.

Usage:
    python -m readmission30.pipeline --source-dir /data/mimic --output-dir outputs
    readmission30-build --n-jobs 4 --report-format yaml
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .config.pipeline_config import (
    OUTPUT_DIR,
    SOURCE_DIR,
    PipelineConfig,
    WindowConfig,
    load_pipeline_config,
)
from .exporters.artifact_writer import ArtifactWriter
from .extractors.source_extractor import SourceStore
from .processing.assembler import SchemaViolationError, assemble
from .processing.cohort_builder import CohortBuilder, audit_cohort
from .transformers import LAYER_BUILDERS, LayerResult
from .validation.layer_validators import (
    validate_cohort,
    validate_config,
    validate_final,
    validate_layer,
    validate_schema,
)
from .validation.qc_harness import QCFinding, QCHaltError, QCHarness, QCReport

logger = logging.getLogger(__name__)


def declared_layer_columns() -> Dict[str, List[str]]:
    """Layer name -> declared output columns, from the builder classes."""
    return {builder.NAME: list(builder.OUTPUT_COLUMNS) for builder in LAYER_BUILDERS}


def _build_layer(
    builder_cls,
    cohort: pd.DataFrame,
    source: SourceStore,
    window_config: WindowConfig,
    run_timestamp: pd.Timestamp,
) -> LayerResult:
    """Worker entry point: build one layer."""
    builder = builder_cls(cohort, source, window_config=window_config, run_timestamp=run_timestamp)
    return builder.build()


@dataclass
class PipelineRun:
    """Outcome of one pipeline run."""

    run_id: str
    status: str
    report: QCReport
    artifacts: Dict[str, Path] = field(default_factory=dict)

    @property
    def published(self) -> bool:
        return self.status == 'published'


class ReadmissionPipeline:
    """Cohort and feature pipeline for 30-day ICU readmission."""

    def __init__(
        self,
        source: SourceStore,
        output_dir: Path = OUTPUT_DIR,
        config: Optional[PipelineConfig] = None,
        run_id: Optional[str] = None,
        report_format: str = 'json',
    ):
        """
        Initialize pipeline.

        Args:
            source: Read-only source store
            output_dir: Parent directory for run artifacts
            config: Run configuration (default: module singletons)
            run_id: Run directory name (default: run timestamp)
            report_format: QC report format, 'json' or 'yaml'
        """
        self.source = source
        self.config = config or PipelineConfig()
        self.writer = ArtifactWriter(output_dir, run_id=run_id, report_format=report_format)
        self.run_id = self.writer.run_id
        self.run_timestamp = pd.Timestamp.now()
        self.report = QCReport(self.run_id, self.config.snapshot())
        self.harness = QCHarness(self.report)
        self.layer_columns = declared_layer_columns()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def build_cohort(self):
        print("\n1. Building cohort...")
        builder = CohortBuilder.from_source(
            self.source,
            cohort_config=self.config.cohort,
            window_config=self.config.windows,
        )
        result = builder.build()
        cohort = result.cohort
        print(f"   Index stays: {len(cohort):,}")
        print(f"   Readmitted within 30d: {int(cohort['readmit_30d_flag'].sum()):,}")

        windows = self.config.windows
        self.harness.checkpoint('cohort', validate_cohort(
            cohort,
            exclusions=result.exclusions,
            cohort_config=self.config.cohort,
            label_window=(windows.readmission_min_days, windows.readmission_max_days),
        ))
        self.report.run_metadata['cohort_audit'] = audit_cohort(cohort)
        return cohort

    def build_layers(self, cohort: pd.DataFrame) -> Dict[str, LayerResult]:
        """Fan the layers out with joblib; each layer is checked as it arrives."""
        parallel = self.config.parallel
        n_jobs = max(1, min(parallel.n_jobs, len(LAYER_BUILDERS)))
        print(f"\n2. Building {len(LAYER_BUILDERS)} feature layers using {n_jobs} workers...")

        # Parse every table once so workers receive a warm cache
        self.source.load_all()

        outputs = Parallel(n_jobs=n_jobs, backend=parallel.backend, return_as="generator")(
            delayed(_build_layer)(builder_cls, cohort, self.source, self.config.windows, self.run_timestamp)
            for builder_cls in LAYER_BUILDERS
        )

        results: Dict[str, LayerResult] = {}
        for result in tqdm(outputs, total=len(LAYER_BUILDERS), desc="  Layers", unit="layer"):
            results[result.name] = result
            self.harness.checkpoint(result.name, validate_layer(
                result.name, result.features, cohort, result.stats, self.config.qc,
            ))
            print(f"   {result.name}: {len(result.features.columns):,} columns")
        return results

    def assemble(self, cohort: pd.DataFrame, results: Dict[str, LayerResult]):
        print("\n3. Assembling feature table...")
        self.harness.checkpoint('schema', validate_schema(self.layer_columns))
        assembled = assemble(cohort, results, self.layer_columns)
        print(f"   Final feature matrix: {assembled.features.shape}")

        self.harness.checkpoint('final', validate_final(
            assembled.features, cohort, self.layer_columns, self.config.qc,
        ))
        return assembled

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self) -> PipelineRun:
        """
        Execute the pipeline.

        Returns:
            PipelineRun with status 'published' or 'halted'
        """
        print("=" * 60)
        print(f"30-Day Readmission Pipeline (run {self.run_id})")
        print("=" * 60)

        try:
            self.harness.checkpoint('config', validate_config())
            self.source.validate_required()

            cohort = self.build_cohort()
            results = self.build_layers(cohort)
            assembled = self.assemble(cohort, results)

        except QCHaltError as exc:
            return self._halt(str(exc))

        except SchemaViolationError as exc:
            self.report.add_finding(QCFinding.make(
                "Assembly schema", 'assembly', 'f', False, details=str(exc),
            ))
            return self._halt(str(exc))

        self.report.set_status('published')
        print("\n4. Writing artifacts...")
        artifacts = self.writer.publish(cohort, assembled.features, assembled.provenance, self.report)
        print(self.report.report())

        print("\n" + "=" * 60)
        print(f"Pipeline complete: {self.writer.run_dir}")
        print("=" * 60)
        return PipelineRun(self.run_id, 'published', self.report, artifacts)

    def _halt(self, reason: str) -> PipelineRun:
        logger.error(f"Run halted: {reason}")
        self.report.set_status('halted')
        self.report.run_metadata['halt_reason'] = reason
        path = self.writer.write_report(self.report)
        print(self.report.report())

        print("\n" + "=" * 60)
        print(f"Pipeline HALTED; QC report at {path}")
        print("=" * 60)
        return PipelineRun(self.run_id, 'halted', self.report, {'qc_report': path})


# =============================================================================
# CLI
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the 30-day ICU readmission cohort and feature table")
    parser.add_argument("--source-dir", type=Path, default=SOURCE_DIR,
                        help="Directory with one parquet/csv file per source table")
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR,
                        help="Parent directory for run artifacts")
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML file with configuration overrides")
    parser.add_argument("--n-jobs", type=int, default=None,
                        help="Parallel workers for the feature layers")
    parser.add_argument("--run-id", type=str, default=None,
                        help="Run directory name (default: run timestamp)")
    parser.add_argument("--report-format", choices=["json", "yaml"], default="json",
                        help="QC report format")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns 0 on a published run, 1 on a QC halt."""
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = load_pipeline_config(args.config)
    if args.n_jobs is not None:
        config.parallel.n_jobs = args.n_jobs

    pipeline = ReadmissionPipeline(
        SourceStore(args.source_dir),
        output_dir=args.output_dir,
        config=config,
        run_id=args.run_id,
        report_format=args.report_format,
    )
    run = pipeline.run()
    return 0 if run.published else 1


if __name__ == "__main__":
    sys.exit(main())
