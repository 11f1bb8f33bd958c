"""
QC Harness
==========

Collects QCFindings from every pipeline checkpoint and halts the run on the
first failed fatal check.

Check categories:
- (a) row count equals cohort, key uniqueness            -> fatal
- (b) per-column coverage below threshold                -> warning
- (c) range violations after normalization               -> fatal
- (d) internal consistency (min <= max, label domain)    -> fatal
- (e) label-conditioned distributional sanity            -> warning
- (f) schema: duplicate names, declared column set       -> fatal
- info: counts and provenance mix, never fails the run
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

FATAL = 'fatal'
WARNING = 'warning'
INFO = 'info'

CATEGORY_SEVERITY = {
    'a': FATAL,
    'b': WARNING,
    'c': FATAL,
    'd': FATAL,
    'e': WARNING,
    'f': FATAL,
    'info': INFO,
}


def to_plain(value: Any) -> Any:
    """Convert numpy/pandas scalars and containers to JSON/YAML-safe values."""
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_plain(v) for v in value]
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.isoformat()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    if value is pd.NA or value is pd.NaT:
        return None
    return value


@dataclass(frozen=True)
class QCFinding:
    """One check outcome. Immutable; produced fresh on every run."""

    check_name: str
    scope: str
    category: str
    severity: str
    passed: bool
    observed: Any = None
    expected: Any = None
    details: str = ''

    @classmethod
    def make(
        cls,
        check_name: str,
        scope: str,
        category: str,
        passed: bool,
        observed: Any = None,
        expected: Any = None,
        details: str = '',
    ) -> 'QCFinding':
        """Build a finding whose severity follows its category."""
        if category not in CATEGORY_SEVERITY:
            raise ValueError(f"Unknown QC category: {category}")
        return cls(
            check_name=check_name,
            scope=scope,
            category=category,
            severity=CATEGORY_SEVERITY[category],
            passed=bool(passed),
            observed=to_plain(observed),
            expected=to_plain(expected),
            details=details,
        )

    @property
    def is_fatal_failure(self) -> bool:
        return self.severity == FATAL and not self.passed

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(asdict(self))


class QCReport:
    """Container for QC findings across all checkpoints."""

    def __init__(self, run_id: str, config_snapshot: Optional[Dict] = None):
        self.name = f"QC Report: {run_id}"
        self.findings: List[QCFinding] = []
        self.run_metadata: Dict[str, Any] = {
            'run_id': run_id,
            'started_at': datetime.now().isoformat(timespec='seconds'),
            'config': to_plain(config_snapshot or {}),
            'status': 'running',
            'stages': [],
        }

    def add_finding(self, finding: QCFinding):
        self.findings.append(finding)

    @property
    def passed(self) -> int:
        return sum(1 for f in self.findings if f.passed)

    @property
    def failed(self) -> int:
        return sum(1 for f in self.findings if not f.passed)

    def fatal_failures(self) -> List[QCFinding]:
        return [f for f in self.findings if f.is_fatal_failure]

    def warnings(self) -> List[QCFinding]:
        return [f for f in self.findings if f.severity == WARNING and not f.passed]

    def set_status(self, status: str):
        self.run_metadata['status'] = status
        self.run_metadata['finished_at'] = datetime.now().isoformat(timespec='seconds')

    def summary(self) -> str:
        status = "FAIL" if self.fatal_failures() else "PASS"
        return (
            f"{self.name}: {status} ({self.passed}/{len(self.findings)} checks, "
            f"{len(self.fatal_failures())} fatal, {len(self.warnings())} warnings)"
        )

    def report(self) -> str:
        lines = [f"\n{'='*60}", f"{self.name}", "="*60]
        scope = None
        for finding in self.findings:
            if finding.scope != scope:
                scope = finding.scope
                lines.append(f"\n[{scope}]")
            icon = "✓" if finding.passed else "✗"
            lines.append(f"  {icon} ({finding.category}) {finding.check_name}")
            if finding.details:
                lines.append(f"      {finding.details}")
        lines.append(self.summary())
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_metadata': to_plain(self.run_metadata),
            'summary': {
                'n_checks': len(self.findings),
                'n_passed': self.passed,
                'n_failed': self.failed,
                'n_fatal': len(self.fatal_failures()),
                'n_warnings': len(self.warnings()),
            },
            'findings': [f.to_dict() for f in self.findings],
        }


class QCHaltError(RuntimeError):
    """A fatal QC finding stopped the run before publication."""

    def __init__(self, report: QCReport, finding: QCFinding):
        super().__init__(
            f"QC halted at {finding.scope}: {finding.check_name} "
            f"(observed={finding.observed}, expected={finding.expected})"
        )
        self.report = report
        self.finding = finding


class QCHarness:
    """Runs checkpoints against a shared QCReport."""

    def __init__(self, report: QCReport):
        self.report = report

    def checkpoint(self, stage: str, findings: List[QCFinding]) -> List[QCFinding]:
        """
        Record a stage's findings and stop on a fatal failure.

        Args:
            stage: Checkpoint name (cohort, layer name, schema, final)
            findings: Findings produced for this stage

        Returns:
            The recorded findings

        Raises:
            QCHaltError: If any finding is a failed fatal check
        """
        for finding in findings:
            self.report.add_finding(finding)

        n_failed = sum(1 for f in findings if not f.passed)
        self.report.run_metadata['stages'].append(stage)
        logger.info(f"QC checkpoint {stage}: {len(findings)} checks, {n_failed} failed")

        for finding in findings:
            if not finding.passed and finding.severity == WARNING:
                logger.warning(f"QC warning [{stage}] {finding.check_name}: {finding.details}")

        for finding in findings:
            if finding.is_fatal_failure:
                logger.error(f"QC fatal [{stage}] {finding.check_name}: {finding.details}")
                self.report.set_status('halted')
                raise QCHaltError(self.report, finding)

        return findings
