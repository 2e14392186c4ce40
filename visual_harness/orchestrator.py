"""
Harness orchestration: one session, many scenarios, one summary.

Acquires the display session, runs the selected scenarios through a
TestRunner, exports artifacts for anything that did not pass and always
tears the session down before returning.
"""

from __future__ import annotations

import dataclasses
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from .artifacts import ArtifactManager
from .config import HarnessConfig
from .errors import ScenarioDefinitionError, SessionStartFailure, SessionTimeout
from .report import RunSummary, format_summary
from .runner import TestRunner
from .scenarios import ScenarioRegistry
from .session import DisplaySessionManager
from .snapshot import SnapshotStore


class Harness:
    """Run scenarios end to end and produce a RunSummary."""

    def __init__(self, config: HarnessConfig, manager: Optional[DisplaySessionManager] = None):
        self.config = config
        self.manager = manager or DisplaySessionManager(verbose=config.verbose)
        self.artifacts = ArtifactManager(config.artifacts_dir)
        self.store = SnapshotStore(config.snapshots_dir, self.artifacts, verbose=config.verbose)
        self._registry: Optional[ScenarioRegistry] = None

    @property
    def registry(self) -> ScenarioRegistry:
        if self._registry is None:
            self._registry = ScenarioRegistry.from_file(self.config.scenarios_file)
        return self._registry

    def app_command(self) -> Optional[List[str]]:
        return self.config.app_command or self.registry.app_command

    def discover(self, name_filter: Optional[str] = None) -> List[str]:
        return self.registry.discover(name_filter)

    def accept(self, name_filter: Optional[str] = None) -> List[Path]:
        """Promote the candidates of the last failing run to goldens."""
        accepted = []
        for name in self.discover(name_filter):
            for path in self.store.accept_candidates(name):
                print(f"✓ Accepted {path}")
                accepted.append(path)
        if not accepted:
            print("No candidate snapshots to accept")
        return accepted

    def _teardown(self, session):
        try:
            self.manager.teardown(session)
        except KeyboardInterrupt:
            # Interrupted while stopping processes: finish with what is still tracked.
            print("⚠ Interrupted during teardown; stopping remaining processes")
            self.manager.teardown(session)
            raise

    def run(self, name_filter: Optional[str] = None) -> RunSummary:
        """Run every scenario matching ``name_filter``.

        Never raises for scenario or session faults; those end up in the
        summary. ScenarioDefinitionError is reported as a setup error.
        """
        summary = RunSummary(artifacts_dir=self.artifacts.base_dir)
        try:
            names = self.discover(name_filter)
        except ScenarioDefinitionError as exc:
            summary.setup_error = f"ScenarioDefinitionError: {exc}"
            return summary

        if not names:
            print(f"No scenarios match {name_filter!r}" if name_filter else "No scenarios defined")
            return summary

        self.artifacts.clear_run_files()
        work_dir = Path(tempfile.mkdtemp(prefix="visual-harness-"))
        session_config = dataclasses.replace(self.config.session, log_dir=work_dir / "logs")
        session = None

        try:
            try:
                session = self.manager.start(session_config)
                self.manager.wait_ready(session)
            except (SessionStartFailure, SessionTimeout) as exc:
                summary.setup_error = f"{type(exc).__name__}: {exc}"
            else:
                runner = TestRunner(
                    session,
                    self.registry,
                    self.store,
                    self.artifacts,
                    self.app_command(),
                    launch_grace=self.config.launch_grace,
                    ready_timeout=self.config.ready_timeout,
                    activation_timeout=self.config.activation_timeout,
                    settle_timeout=self.config.settle_timeout,
                    poll_interval=self.config.poll_interval,
                    verbose=self.config.verbose,
                )
                summary.results.extend(runner.run_all(name_filter))

            if not summary.ok:
                summary.exported = self.artifacts.export_session_logs(work_dir / "logs")
        finally:
            try:
                self._teardown(session)
            finally:
                if self.config.keep_work_dir:
                    print(f"Work directory kept at {work_dir}")
                else:
                    shutil.rmtree(work_dir, ignore_errors=True)

        if not summary.ok:
            summary_path = self.artifacts.base_dir / "summary.json"
            self.artifacts.write_json(summary_path, summary.to_dict())
            summary.exported.append(summary_path)
        return summary


def run_harness(config: HarnessConfig, name_filter: Optional[str] = None) -> RunSummary:
    """Run the harness and print its summary."""
    summary = Harness(config).run(name_filter)
    print()
    print(format_summary(summary))
    return summary
