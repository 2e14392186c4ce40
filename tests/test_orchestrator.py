"""Tests for the orchestrator, the run summary and the command line."""

from __future__ import annotations

import json

import pytest

from conftest import (
    OPEN_AND_CLICK,
    SLEEPING_APP,
    FakeSession,
    make_frame,
    write_scenarios,
)
from visual_harness import cli
from visual_harness.config import HarnessConfig
from visual_harness.errors import SessionStartFailure, SessionTimeout
from visual_harness.orchestrator import Harness
from visual_harness.report import RunSummary, format_summary
from visual_harness.runner import TestResult, TestStatus
from visual_harness.scenarios import Click
from visual_harness.session import SessionConfig, SessionState

CLICKED = make_frame(button=(10, 10, 30, 20))


class StubManager:
    """Hands out a FakeSession and records the lifecycle calls made on it."""

    def __init__(self, tmp_path, start_error=None, ready_error=None, interrupted_teardowns=0):
        self.tmp_path = tmp_path
        self.start_error = start_error
        self.ready_error = ready_error
        # Number of teardown calls that are interrupted before doing anything
        self.interrupted_teardowns = interrupted_teardowns
        self.session = None
        self.started = 0
        self.teardowns = []

    def start(self, config):
        self.started += 1
        self.config = config
        if self.start_error is not None:
            raise self.start_error
        self.session = FakeSession(config.log_dir, state=SessionState.STARTING)
        self.session.frames = [CLICKED]
        config.log_dir.mkdir(parents=True, exist_ok=True)
        (config.log_dir / "display-server.log").write_text("server output\n")
        return self.session

    def wait_ready(self, session, timeout=None):
        if self.ready_error is not None:
            raise self.ready_error
        session.state = SessionState.READY
        return session.state

    def teardown(self, session):
        self.teardowns.append(session)
        if self.interrupted_teardowns:
            self.interrupted_teardowns -= 1
            raise KeyboardInterrupt()
        if session is not None:
            session.tracker.cleanup_all(timeout=2.0)
            session.state = SessionState.TORN_DOWN


@pytest.fixture
def harness_config(tmp_path):
    scenarios = write_scenarios(tmp_path / "scenarios.json", [
        OPEN_AND_CLICK,
        {"name": "idle", "steps": []},
    ])
    return HarnessConfig(
        scenarios_file=scenarios,
        snapshots_dir=tmp_path / "snapshots",
        artifacts_dir=tmp_path / "artifacts",
        app_command=list(SLEEPING_APP),
        session=SessionConfig(display=77, rfb_port=5977),
        launch_grace=0.3,
        ready_timeout=2.0,
        settle_timeout=0.2,
        poll_interval=0.05,
    )


def _save_golden(config):
    path = config.snapshots_dir / "open-and-click-button" / "open-and-click-button.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    CLICKED.save(path)


def test_all_scenarios_pass(tmp_path, harness_config):
    _save_golden(harness_config)
    manager = StubManager(tmp_path)

    summary = Harness(harness_config, manager=manager).run()

    assert [r.status for r in summary.results] == [TestStatus.PASSED, TestStatus.PASSED]
    assert summary.exit_code == 0
    assert manager.teardowns == [manager.session]
    assert not (harness_config.artifacts_dir / "summary.json").exists()
    # Session logs live in a throwaway work directory.
    assert not manager.config.log_dir.exists()


def test_failure_exports_artifacts_and_exits_1(tmp_path, harness_config):
    manager = StubManager(tmp_path)

    summary = Harness(harness_config, manager=manager).run()

    assert summary.failed == 1 and summary.passed == 1
    assert summary.exit_code == 1
    assert len(manager.teardowns) == 1
    artifacts = harness_config.artifacts_dir
    assert (artifacts / "_session" / "display-server.log").read_text() == "server output\n"
    data = json.loads((artifacts / "summary.json").read_text())
    assert data["exit_code"] == 1
    assert [r["status"] for r in data["results"]] == ["Failed", "Passed"]
    assert "✗ open-and-click-button: FAILED" in format_summary(summary)


@pytest.mark.parametrize("kwargs", [
    {"start_error": SessionStartFailure("Display :77 already in use")},
    {"ready_error": SessionTimeout("window manager never answered")},
])
def test_session_problems_exit_2_without_running_scenarios(tmp_path, harness_config, kwargs):
    manager = StubManager(tmp_path, **kwargs)

    summary = Harness(harness_config, manager=manager).run()

    assert summary.results == []
    assert summary.exit_code == 2
    assert summary.setup_error is not None
    assert len(manager.teardowns) == 1
    assert (harness_config.artifacts_dir / "summary.json").exists()
    assert "SETUP FAILED" in format_summary(summary)


def test_empty_discovery_never_starts_session(tmp_path, harness_config):
    manager = StubManager(tmp_path)

    summary = Harness(harness_config, manager=manager).run("no-such-scenario")

    assert summary.total == 0
    assert summary.exit_code == 0
    assert manager.started == 0
    assert "0 executed" in format_summary(summary)


def test_bad_scenario_file_is_setup_error(tmp_path, harness_config):
    harness_config.scenarios_file = tmp_path / "missing.json"
    manager = StubManager(tmp_path)

    summary = Harness(harness_config, manager=manager).run()

    assert summary.exit_code == 2
    assert "not found" in summary.setup_error
    assert manager.started == 0


def test_launch_failure_is_exit_2(tmp_path, harness_config):
    harness_config.app_command = ["/nonexistent/app-under-test"]
    manager = StubManager(tmp_path)

    summary = Harness(harness_config, manager=manager).run("open-and-click-button")

    assert summary.results[0].infrastructure
    assert summary.exit_code == 2


def test_accept_promotes_failed_candidates(tmp_path, harness_config):
    manager = StubManager(tmp_path)
    harness = Harness(harness_config, manager=manager)
    assert harness.run("open-and-click-button").exit_code == 1

    accepted = harness.accept("open-and-click-button")

    golden = harness_config.snapshots_dir / "open-and-click-button" / "open-and-click-button.png"
    assert accepted == [golden]
    assert Harness(harness_config, manager=StubManager(tmp_path)).run().exit_code == 0


def test_interrupt_during_scenario_tears_down_and_propagates(tmp_path, harness_config, monkeypatch):
    def interrupted(self, ctx):
        raise KeyboardInterrupt()

    monkeypatch.setattr(Click, "execute", interrupted)
    manager = StubManager(tmp_path)

    with pytest.raises(KeyboardInterrupt):
        Harness(harness_config, manager=manager).run()

    assert manager.teardowns == [manager.session]
    assert manager.session.state is SessionState.TORN_DOWN
    # The application under test was stopped before the session went away.
    assert manager.session.tracker.names() == []
    assert not manager.config.log_dir.parent.exists()


def test_interrupted_teardown_is_finished_before_propagating(tmp_path, harness_config):
    _save_golden(harness_config)
    manager = StubManager(tmp_path, interrupted_teardowns=1)

    with pytest.raises(KeyboardInterrupt):
        Harness(harness_config, manager=manager).run()

    assert manager.teardowns == [manager.session, manager.session]
    assert manager.session.state is SessionState.TORN_DOWN
    assert not manager.config.log_dir.parent.exists()


def test_repeated_runs_are_deterministic(tmp_path, harness_config):
    _save_golden(harness_config)

    first = Harness(harness_config, manager=StubManager(tmp_path)).run()
    second = Harness(harness_config, manager=StubManager(tmp_path)).run()

    assert [(r.scenario, r.status, r.reason) for r in first.results] == \
        [(r.scenario, r.status, r.reason) for r in second.results]
    assert first.exit_code == second.exit_code == 0


def test_run_summary_exit_codes():
    passed = TestResult("a", TestStatus.PASSED)
    failed = TestResult("b", TestStatus.FAILED, reason="AssertionMismatch: x")
    errored = TestResult("c", TestStatus.ERRORED, reason="SessionTimeout: y")
    infra = TestResult("d", TestStatus.ERRORED, reason="launch", infrastructure=True)

    assert RunSummary().exit_code == 0
    assert RunSummary([passed]).exit_code == 0
    assert RunSummary([passed, failed]).exit_code == 1
    assert RunSummary([errored]).exit_code == 1
    assert RunSummary([failed, infra]).exit_code == 2
    assert RunSummary(setup_error="SessionTimeout: z").exit_code == 2


# Command line

def test_cli_help_exits_0(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--help"])
    assert excinfo.value.code == 0
    assert "--accept" in capsys.readouterr().out


def test_cli_list(harness_config, capsys):
    code = cli.main(["--list", "--scenarios", str(harness_config.scenarios_file), "open"])
    assert code == 0
    assert capsys.readouterr().out.split() == ["open-and-click-button"]


def test_cli_list_with_bad_file(tmp_path):
    assert cli.main(["--list", "--scenarios", str(tmp_path / "missing.json")]) == 2


def test_cli_run_with_bad_file_exits_2(tmp_path, capsys):
    code = cli.main([
        "--scenarios", str(tmp_path / "missing.json"),
        "--artifacts-dir", str(tmp_path / "artifacts"),
    ])
    assert code == 2
    assert "SETUP FAILED" in capsys.readouterr().out


def test_cli_interrupt_exits_130(tmp_path, monkeypatch):
    def interrupted(config, name_filter=None):
        raise KeyboardInterrupt()

    monkeypatch.setattr(cli, "run_harness", interrupted)
    assert cli.main(["--scenarios", str(tmp_path / "s.json")]) == 130


def test_cli_overrides_session_config(tmp_path, monkeypatch):
    monkeypatch.delenv("HARNESS_RFB_PORT", raising=False)
    args = cli.build_parser().parse_args([
        "--display", "5", "--geometry", "800x600", "--app", "/opt/app --demo", "--timeout", "3",
        "--snapshots-dir", str(tmp_path),
    ])
    config = cli.config_from_args(args)
    assert config.session.display == 5
    assert config.session.rfb_port == 5905
    assert config.session.geometry == "800x600"
    assert config.session.ready_timeout == 3.0
    assert config.app_command == ["/opt/app", "--demo"]
    assert config.snapshots_dir == tmp_path
