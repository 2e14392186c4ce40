"""Harness configuration.

Defaults come from the environment so that the container image (or a CI job)
can point the harness at its repository checkout and application binary
without extra flags. Command-line options override every value here.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .session import SessionConfig


def project_root() -> Path:
    """Repository root: ``$HARNESS_REPO_DIR`` or the working directory."""
    return Path(os.environ.get("HARNESS_REPO_DIR", os.getcwd())).resolve()


def _env_path(name: str, *default_parts: str) -> Path:
    value = os.environ.get(name)
    if value:
        return Path(value)
    return project_root().joinpath(*default_parts)


def default_scenarios_file() -> Path:
    return _env_path("HARNESS_SCENARIOS", "tests", "scenarios.json")


def default_snapshots_dir() -> Path:
    return _env_path("HARNESS_SNAPSHOTS_DIR", "tests", "snapshots")


def default_artifacts_dir() -> Path:
    return _env_path("HARNESS_ARTIFACTS_DIR", "tests", "_artifacts")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value.lstrip(":"))
    except ValueError:
        raise ValueError(f"${name} must be an integer, got {value!r}")


def app_command_from_env() -> Optional[List[str]]:
    """Return the application command from ``$HARNESS_APP_BIN``, if set."""
    value = os.environ.get("HARNESS_APP_BIN")
    if not value:
        return None
    return shlex.split(value)


def session_config_from_env() -> SessionConfig:
    """Build a SessionConfig from environment overrides."""
    display = _env_int("HARNESS_DISPLAY", 1)
    return SessionConfig(
        display=display,
        rfb_port=_env_int("HARNESS_RFB_PORT", 5900 + display),
        geometry=os.environ.get("HARNESS_GEOMETRY", "1280x800"),
        password=os.environ.get("VNC_PASSWORD") or None,
    )


@dataclass
class HarnessConfig:
    """Everything the orchestrator needs for one run."""
    scenarios_file: Path = field(default_factory=default_scenarios_file)
    snapshots_dir: Path = field(default_factory=default_snapshots_dir)
    artifacts_dir: Path = field(default_factory=default_artifacts_dir)
    app_command: Optional[List[str]] = None
    session: SessionConfig = field(default_factory=session_config_from_env)
    # Scenario-level bounded waits
    launch_grace: float = 0.5
    ready_timeout: float = 10.0
    activation_timeout: float = 5.0
    settle_timeout: float = 5.0
    poll_interval: float = 0.2
    # Keep the work directory (process logs) after the run
    keep_work_dir: bool = False
    verbose: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "HarnessConfig":
        """Read the environment now and apply non-None ``overrides`` on top."""
        config = cls(app_command=app_command_from_env())
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise TypeError(f"Unknown configuration option: {key}")
            setattr(config, key, value)
        return config
