"""Scenario execution.

Each scenario goes through::

    NotStarted -> LaunchingApp -> AwaitingReady -> Executing
               -> CapturingSnapshot -> Comparing -> Passed | Failed | Errored

Launch problems and readiness timeouts end in Errored, golden mismatches in
Failed. Every fault raised while a scenario runs is converted into its
TestResult, so one broken scenario never stops the run.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .artifacts import ERROR_SCREEN, ArtifactManager
from .errors import AppLaunchError, AssertionMismatch, PollTimeout, SessionTimeout, WindowNotFound
from .input import InputInjector, WindowMatcher
from .polling import poll_until
from .scenarios import Scenario, ScenarioRegistry, SnapshotStep
from .snapshot import SnapshotStore


class ScenarioState(Enum):
    NOT_STARTED = "NotStarted"
    LAUNCHING_APP = "LaunchingApp"
    AWAITING_READY = "AwaitingReady"
    EXECUTING = "Executing"
    CAPTURING_SNAPSHOT = "CapturingSnapshot"
    COMPARING = "Comparing"
    PASSED = "Passed"
    FAILED = "Failed"
    ERRORED = "Errored"


class TestStatus(Enum):
    __test__ = False

    PASSED = "Passed"
    FAILED = "Failed"
    ERRORED = "Errored"


@dataclass(frozen=True)
class TestResult:
    """Outcome of one scenario execution."""
    __test__ = False

    scenario: str
    status: TestStatus
    reason: Optional[str] = None
    artifacts: Tuple[Path, ...] = ()
    states: Tuple[ScenarioState, ...] = ()
    duration: float = 0.0
    # Setup problem (the application could not be started) rather than a test verdict
    infrastructure: bool = False

    @property
    def passed(self) -> bool:
        return self.status is TestStatus.PASSED

    def to_dict(self) -> dict:
        return {
            "scenario": self.scenario,
            "status": self.status.value,
            "reason": self.reason,
            "artifacts": [str(p) for p in self.artifacts],
            "states": [s.value for s in self.states],
            "duration": round(self.duration, 3),
            "infrastructure": self.infrastructure,
        }


@dataclass
class ScenarioRun:
    """Mutable state of the scenario currently executing; steps act on it."""
    runner: "TestRunner"
    scenario: Scenario
    injector: InputInjector
    window_id: Optional[str] = None
    states: List[ScenarioState] = field(default_factory=lambda: [ScenarioState.NOT_STARTED])
    mismatches: List[str] = field(default_factory=list)
    artifacts: List[Path] = field(default_factory=list)

    @property
    def state(self) -> ScenarioState:
        return self.states[-1]

    def enter(self, state: ScenarioState):
        if self.states[-1] is not state:
            self.states.append(state)

    def check_snapshot(self, step: SnapshotStep):
        self.runner.check_snapshot(self, step)


class TestRunner:
    """Runs scenarios one at a time against a single ready session."""
    __test__ = False

    def __init__(self, session, registry: ScenarioRegistry, store: SnapshotStore,
                 artifacts: ArtifactManager, app_command: Optional[List[str]],
                 launch_grace: float = 0.5, ready_timeout: float = 10.0,
                 activation_timeout: float = 5.0, settle_timeout: float = 5.0,
                 poll_interval: float = 0.2, verbose: bool = False):
        self.session = session
        self.registry = registry
        self.store = store
        self.artifacts = artifacts
        self.app_command = app_command
        self.launch_grace = launch_grace
        self.ready_timeout = ready_timeout
        self.activation_timeout = activation_timeout
        self.settle_timeout = settle_timeout
        self.poll_interval = poll_interval
        self.verbose = verbose

    def log(self, msg: str):
        if self.verbose:
            print(f"[Runner] {msg}")

    def discover(self, name_filter: Optional[str] = None) -> List[str]:
        return self.registry.discover(name_filter)

    def run(self, name: str) -> TestResult:
        """Run one scenario by exact name.

        Raises:
            UnknownScenario: before anything touches the session.
        """
        scenario = self.registry.get(name)
        return self._run_scenario(scenario)

    def run_all(self, name_filter: Optional[str] = None) -> List[TestResult]:
        names = self.discover(name_filter)
        results = []
        for index, name in enumerate(names, start=1):
            print(f"\n[{index}/{len(names)}] {name}")
            results.append(self.run(name))
        return results

    # Scenario phases

    def _process_name(self, scenario: Scenario) -> str:
        return f"app-{scenario.name}"

    def _launch_app(self, scenario: Scenario) -> subprocess.Popen:
        if not self.app_command:
            raise AppLaunchError("No application command configured (set $HARNESS_APP_BIN or 'app')")
        cmd = [*self.app_command, *scenario.app_args]
        self.log(f"launching {' '.join(cmd)}")
        try:
            proc = self.session.run_in_display(cmd, self._process_name(scenario))
        except OSError as exc:
            raise AppLaunchError(f"Failed to launch {cmd[0]}: {exc}") from exc

        try:
            code = proc.wait(timeout=self.launch_grace)
        except subprocess.TimeoutExpired:
            return proc
        raise AppLaunchError(f"{cmd[0]} exited immediately with code {code}")

    def _await_ready(self, run: ScenarioRun, proc: subprocess.Popen) -> str:
        matcher = run.scenario.ready or WindowMatcher(pid=proc.pid)

        def still_running():
            if proc.poll() is not None:
                raise AppLaunchError(
                    f"Application exited with code {proc.returncode} before showing a window"
                )

        try:
            return run.injector.wait_for_window(matcher, timeout=self.ready_timeout,
                                                still_running=still_running)
        except PollTimeout as exc:
            raise SessionTimeout(f"Application window never appeared: {exc}") from exc

    def check_snapshot(self, run: ScenarioRun, step: SnapshotStep):
        """Capture until the candidate matches its golden or the settle time runs out."""
        scenario = run.scenario
        policy = step.policy or scenario.policy
        golden = self.store.load_golden(scenario.name, step.golden_name)
        settle = self.settle_timeout if step.settle_timeout is None else step.settle_timeout
        last = []
        window_id = None
        if step.window:
            if run.window_id is None:
                raise WindowNotFound(f"snapshot '{step.label}' needs a current window")
            window_id = run.window_id

        def attempt() -> bool:
            run.enter(ScenarioState.CAPTURING_SNAPSHOT)
            candidate = self.store.capture(self.session, scenario.name, step.label, step.golden_name,
                                           window_id=window_id)
            run.enter(ScenarioState.COMPARING)
            comparison = self.store.compare(candidate, golden, policy)
            last[:] = [candidate, comparison]
            return comparison.match

        if golden is None:
            attempt()
        else:
            try:
                poll_until(attempt, timeout=settle, interval=self.poll_interval,
                           description=f"snapshot '{step.label}' to match")
            except PollTimeout:
                self.log(f"snapshot '{step.label}' did not settle within {settle}s")

        candidate, comparison = last
        if comparison.match:
            self.log(f"snapshot '{step.label}': {comparison.summary()}")
        else:
            run.mismatches.append(f"{step.label}: {comparison.summary()}")
            run.artifacts.extend(self.store.persist_on_failure(
                candidate, self.artifacts.scenario_dir(scenario.name), comparison, policy
            ))
        run.enter(ScenarioState.EXECUTING)

    def _capture_error_screen(self, run: ScenarioRun):
        if not self.session.is_ready:
            return
        path = self.artifacts.ensure_scenario_dir(run.scenario.name) / ERROR_SCREEN
        try:
            self.session.grab_screen().save(path)
        except Exception as exc:
            print(f"⚠ Could not capture screen for {run.scenario.name}: {exc}")
            return
        run.artifacts.append(path)

    def _run_scenario(self, scenario: Scenario) -> TestResult:
        try:
            self.artifacts.clear_scenario(scenario.name)
        except (OSError, ValueError) as exc:
            # Nothing was launched and there is no artifact directory to write into.
            return TestResult(
                scenario=scenario.name,
                status=TestStatus.ERRORED,
                reason=f"{type(exc).__name__}: {exc}",
                states=(ScenarioState.NOT_STARTED, ScenarioState.ERRORED),
            )
        injector = InputInjector(
            self.session,
            activation_timeout=self.activation_timeout,
            poll_interval=self.poll_interval,
            verbose=self.verbose,
        )
        run = ScenarioRun(self, scenario, injector)
        started = time.monotonic()
        process_name = self._process_name(scenario)
        reason = None
        infrastructure = False

        try:
            try:
                run.enter(ScenarioState.LAUNCHING_APP)
                proc = self._launch_app(scenario)
                run.enter(ScenarioState.AWAITING_READY)
                run.window_id = self._await_ready(run, proc)
                run.enter(ScenarioState.EXECUTING)
                for step in scenario.steps:
                    step.execute(run)
            except AppLaunchError as exc:
                reason = str(exc)
                infrastructure = True
            except SessionTimeout as exc:
                reason = f"SessionTimeout: {exc}"
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"

            if reason is not None:
                run.enter(ScenarioState.ERRORED)
                self._capture_error_screen(run)
        finally:
            self.session.stop_process(process_name)

        if reason is not None:
            status = TestStatus.ERRORED
        elif run.mismatches:
            status = TestStatus.FAILED
            mismatch = AssertionMismatch("; ".join(run.mismatches))
            reason = f"{type(mismatch).__name__}: {mismatch}"
            run.enter(ScenarioState.FAILED)
        else:
            status = TestStatus.PASSED
            run.enter(ScenarioState.PASSED)

        if status is not TestStatus.PASSED:
            scenario_dir = self.artifacts.ensure_scenario_dir(scenario.name)
            if self.artifacts.copy_log(self.session.log_path(process_name), scenario_dir / "app.log"):
                run.artifacts.append(scenario_dir / "app.log")

        result = TestResult(
            scenario=scenario.name,
            status=status,
            reason=reason,
            artifacts=tuple(run.artifacts),
            states=tuple(run.states),
            duration=time.monotonic() - started,
            infrastructure=infrastructure,
        )
        if status is not TestStatus.PASSED:
            result_path = self.artifacts.scenario_dir(scenario.name) / "result.json"
            self.artifacts.write_json(result_path, result.to_dict())
            result = replace(result, artifacts=result.artifacts + (result_path,))
        return result
