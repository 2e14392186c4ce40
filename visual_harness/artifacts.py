"""Failure artifact directory layout.

The layout is stable across runs so that CI tooling can upload and diff it::

    <base>/summary.json
    <base>/_session/<role>.log
    <base>/<scenario>/result.json
    <base>/<scenario>/app.log
    <base>/<scenario>/<stem>.new.png | <stem>.diff.png | <stem>.json
    <base>/<scenario>/error-screen.png
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import List

SESSION_DIR = "_session"
CANDIDATE_SUFFIX = ".new.png"
DIFF_SUFFIX = ".diff.png"
ERROR_SCREEN = "error-screen.png"


def plain_component(name: str, what: str = "name") -> str:
    """Return ``name`` if it is a single ordinary path component, else raise ValueError."""
    if not isinstance(name, str) or name in ("", ".", "..") or "/" in name or "\\" in name or "\0" in name:
        raise ValueError(f"Invalid {what} {name!r}: must be a single path component")
    return name


class ArtifactManager:
    """Manage the artifact tree of a run."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def scenario_dir(self, scenario_name: str) -> Path:
        """Directory of one scenario; always a direct child of ``base_dir``."""
        if plain_component(scenario_name, "scenario name") == SESSION_DIR:
            raise ValueError(f"Scenario name {scenario_name!r} is reserved for session logs")
        return self.base_dir / scenario_name

    @property
    def session_dir(self) -> Path:
        return self.base_dir / SESSION_DIR

    def clear_scenario(self, scenario_name: str):
        """Remove artifacts left for this scenario by a previous run."""
        path = self.scenario_dir(scenario_name)
        if path.exists():
            shutil.rmtree(path)

    def clear_run_files(self):
        """Remove run-level files from a previous run."""
        for path in (self.base_dir / "summary.json", self.session_dir):
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()

    def ensure_scenario_dir(self, scenario_name: str) -> Path:
        path = self.scenario_dir(scenario_name)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def candidates(self, scenario_name: str) -> List[Path]:
        path = self.scenario_dir(scenario_name)
        if not path.is_dir():
            return []
        return sorted(path.glob(f"*{CANDIDATE_SUFFIX}"))

    def write_json(self, path: Path, payload: dict) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        return path

    def copy_log(self, source: Path, destination: Path) -> bool:
        """Copy a process log if it exists; returns True when copied."""
        if not source.is_file():
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        return True

    def export_session_logs(self, log_dir: Path) -> List[Path]:
        """Copy the session's process logs into ``_session/``."""
        exported = []
        if not log_dir or not Path(log_dir).is_dir():
            return exported
        for source in sorted(Path(log_dir).glob("*.log")):
            destination = self.session_dir / source.name
            if self.copy_log(source, destination):
                exported.append(destination)
        return exported
