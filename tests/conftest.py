"""Shared fixtures: a scripted stand-in for a live display session.

FakeSession answers xdotool/wmctrl invocations from a small script and serves
pre-rendered frames instead of grabbing an X display, so the runner and input
layers can be exercised without Xtigervnc. Processes launched "in the display"
are real child processes (usually a sleeping Python interpreter) so launch,
exit and cleanup behave exactly as they do against a real session.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from PIL import Image, ImageDraw

from visual_harness.errors import SessionNotReady
from visual_harness.process import ProcessTracker
from visual_harness.session import SessionState

WINDOW_ID = "4242"

SLEEPING_APP = [sys.executable, "-c", "import time; time.sleep(30)"]
CRASHING_APP = [sys.executable, "-c", "raise SystemExit(3)"]


def make_frame(size=(64, 48), color=(32, 32, 32, 255), button=None) -> Image.Image:
    """A synthetic screen: flat background plus an optional filled 'button' rect."""
    img = Image.new("RGBA", size, color)
    if button is not None:
        ImageDraw.Draw(img).rectangle(button, fill=(200, 60, 60, 255))
    return img


class FakeSession:
    def __init__(self, log_dir: Path, state: SessionState = SessionState.READY):
        self.state = state
        self.address = ":99"
        self.log_dir = log_dir
        self.tracker = ProcessTracker()
        self.calls: List[List[str]] = []
        self.windows: List[str] = [WINDOW_ID]
        # Number of `xdotool search` calls that find nothing before windows show up
        self.search_misses = 0
        self.searches = 0
        # xdotool/wmctrl subcommand -> forced return code
        self.failures: Dict[str, int] = {}
        self.frames: List[Image.Image] = [make_frame()]
        self.grabs = 0
        # window id passed to each grab_screen call (None for the root window)
        self.grab_targets: List[Optional[str]] = []

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    def require_ready(self):
        if self.state is not SessionState.READY:
            raise SessionNotReady(f"Session on {self.address} is {self.state.value}, not Ready")

    def log_path(self, role: str) -> Path:
        return self.log_dir / f"{role}.log"

    def run_tool(self, cmd: List[str], timeout: float = 5.0, text: bool = True,
                 input=None) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        subcommand = cmd[1] if len(cmd) > 1 else ""
        if cmd[0] == "wmctrl":
            subcommand = "wmctrl"

        if subcommand in self.failures:
            return subprocess.CompletedProcess(cmd, self.failures[subcommand], "", f"{subcommand} failed")

        if cmd[0] == "xdotool" and subcommand == "search":
            self.searches += 1
            if self.windows and self.searches > self.search_misses:
                return subprocess.CompletedProcess(cmd, 0, "\n".join(self.windows) + "\n", "")
            return subprocess.CompletedProcess(cmd, 1, "", "")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def run_in_display(self, cmd: List[str], name: str,
                       env_overrides: Optional[Dict[str, str]] = None) -> subprocess.Popen:
        log_path = self.log_path(name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "w") as log_file:
            proc = subprocess.Popen(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                preexec_fn=os.setpgrp,
            )
        self.tracker.register(name, proc)
        return proc

    def stop_process(self, name: str):
        self.tracker.cleanup(name, timeout=2.0)

    def grab_screen(self, window_id: Optional[str] = None) -> Image.Image:
        self.grabs += 1
        self.grab_targets.append(window_id)
        if len(self.frames) > 1:
            return self.frames.pop(0).copy()
        return self.frames[0].copy()

    def xdotool_calls(self, subcommand: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == "xdotool" and len(c) > 1 and c[1] == subcommand]


@pytest.fixture
def fake_session(tmp_path):
    session = FakeSession(tmp_path / "logs")
    yield session
    session.tracker.cleanup_all(timeout=2.0)


def write_scenarios(path: Path, scenarios: list, app=None) -> Path:
    payload = {"scenarios": scenarios}
    if app is not None:
        payload["app"] = app
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


OPEN_AND_CLICK = {
    "name": "open-and-click-button",
    "steps": [
        {"action": "activate_window", "title": "MainWindow"},
        {"action": "click", "x": 100, "y": 50},
        {"action": "snapshot", "label": "open-and-click-button"},
    ],
}
