"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest

from visual_harness.config import HarnessConfig, session_config_from_env

PATH_VARIABLES = ("HARNESS_SCENARIOS", "HARNESS_SNAPSHOTS_DIR", "HARNESS_ARTIFACTS_DIR")


@pytest.fixture
def clean_env(monkeypatch):
    for name in PATH_VARIABLES + ("HARNESS_REPO_DIR", "HARNESS_APP_BIN"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_paths_follow_environment_set_after_import(tmp_path, clean_env):
    clean_env.setenv("HARNESS_SCENARIOS", str(tmp_path / "custom.json"))
    clean_env.setenv("HARNESS_SNAPSHOTS_DIR", str(tmp_path / "goldens"))
    clean_env.setenv("HARNESS_ARTIFACTS_DIR", str(tmp_path / "out"))

    config = HarnessConfig.from_env()

    assert config.scenarios_file == tmp_path / "custom.json"
    assert config.snapshots_dir == tmp_path / "goldens"
    assert config.artifacts_dir == tmp_path / "out"


def test_paths_default_under_repo_dir(tmp_path, clean_env):
    clean_env.setenv("HARNESS_REPO_DIR", str(tmp_path))

    config = HarnessConfig.from_env()

    root = tmp_path.resolve()
    assert config.scenarios_file == root / "tests" / "scenarios.json"
    assert config.snapshots_dir == root / "tests" / "snapshots"
    assert config.artifacts_dir == root / "tests" / "_artifacts"


def test_repo_dir_change_is_picked_up_between_calls(tmp_path, clean_env):
    clean_env.setenv("HARNESS_REPO_DIR", str(tmp_path / "one"))
    first = HarnessConfig.from_env()
    clean_env.setenv("HARNESS_REPO_DIR", str(tmp_path / "two"))
    second = HarnessConfig.from_env()

    assert first.snapshots_dir != second.snapshots_dir
    assert second.snapshots_dir.parent.parent.name == "two"


def test_overrides_win_and_none_is_ignored(tmp_path, clean_env):
    clean_env.setenv("HARNESS_APP_BIN", "/opt/app --demo")

    config = HarnessConfig.from_env(snapshots_dir=Path(tmp_path), artifacts_dir=None)

    assert config.snapshots_dir == tmp_path
    assert config.app_command == ["/opt/app", "--demo"]
    with pytest.raises(TypeError, match="Unknown configuration option"):
        HarnessConfig.from_env(colour="blue")


def test_session_display_from_environment(monkeypatch):
    monkeypatch.setenv("HARNESS_DISPLAY", ":3")
    monkeypatch.delenv("HARNESS_RFB_PORT", raising=False)

    session = session_config_from_env()

    assert session.display == 3
    assert session.rfb_port == 5903
