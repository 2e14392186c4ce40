"""Run summary and human-readable reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .runner import TestResult, TestStatus

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_INFRASTRUCTURE = 2
EXIT_INTERRUPTED = 130


@dataclass
class RunSummary:
    """Aggregate of all TestResults for one invocation."""
    results: List[TestResult] = field(default_factory=list)
    # Set when the session could not be acquired; no scenario ran.
    setup_error: Optional[str] = None
    artifacts_dir: Optional[Path] = None
    exported: List[Path] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def _count(self, status: TestStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def passed(self) -> int:
        return self._count(TestStatus.PASSED)

    @property
    def failed(self) -> int:
        return self._count(TestStatus.FAILED)

    @property
    def errored(self) -> int:
        return self._count(TestStatus.ERRORED)

    @property
    def ok(self) -> bool:
        return self.setup_error is None and self.failed == 0 and self.errored == 0

    @property
    def exit_code(self) -> int:
        if self.setup_error is not None or any(r.infrastructure for r in self.results):
            return EXIT_INFRASTRUCTURE
        if self.failed or self.errored:
            return EXIT_FAILURES
        return EXIT_OK

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "errored": self.errored,
            "exit_code": self.exit_code,
            "setup_error": self.setup_error,
            "results": [r.to_dict() for r in self.results],
        }


_MARKS = {
    TestStatus.PASSED: "✓",
    TestStatus.FAILED: "✗",
    TestStatus.ERRORED: "✗",
}


def format_result(result: TestResult) -> str:
    line = f"  {_MARKS[result.status]} {result.scenario}: {result.status.value.upper()}"
    if result.reason:
        line += f" - {result.reason}"
    return line


def format_summary(summary: RunSummary) -> str:
    """Format a run summary as human-readable text."""
    lines = ["=" * 70, "SUMMARY", "=" * 70]

    if summary.setup_error is not None:
        lines.append(f"✗ SETUP FAILED: {summary.setup_error}")

    for result in summary.results:
        lines.append(format_result(result))

    if summary.total == 0 and summary.setup_error is None:
        lines.append("  (no scenarios matched; 0 executed)")

    lines.append("")
    lines.append(
        f"Total: {summary.total}, passed: {summary.passed}, "
        f"failed: {summary.failed}, errored: {summary.errored}"
    )

    failing = [r for r in summary.results if not r.passed and r.artifacts]
    if failing or summary.exported:
        lines.append("")
        lines.append(f"Artifacts saved to: {summary.artifacts_dir}")
        for result in failing:
            lines.append(f"  {result.scenario}:")
            for path in result.artifacts:
                lines.append(f"    - {path}")
        for path in summary.exported:
            lines.append(f"  - {path}")

    return "\n".join(lines)
