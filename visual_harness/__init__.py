"""Visual regression harness for GUI applications on a virtual X display."""

__version__ = "0.1.0"

from .errors import (
    AppLaunchError,
    AssertionMismatch,
    HarnessError,
    InputError,
    PollTimeout,
    PreflightError,
    ScenarioDefinitionError,
    SessionNotReady,
    SessionStartFailure,
    SessionTimeout,
    UnknownScenario,
    WindowNotFound,
)
from .input import InputInjector, WindowMatcher
from .orchestrator import Harness, run_harness
from .polling import poll_until
from .report import RunSummary
from .runner import ScenarioState, TestResult, TestRunner, TestStatus
from .scenarios import Scenario, ScenarioRegistry
from .session import DisplaySessionManager, Session, SessionConfig, SessionState
from .snapshot import ComparePolicy, ComparisonResult, Snapshot, SnapshotStore, compare_images
