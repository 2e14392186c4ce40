"""
Scenario definitions.

A scenario is a named, ordered list of input and snapshot steps run against
one instance of the application under test. Scenarios are loaded from a JSON
file::

    {
      "app": ["/usr/local/bin/app_tests", "run"],
      "scenarios": [
        {
          "name": "open-and-click-button",
          "compare": {"mode": "exact"},
          "steps": [
            {"action": "activate_window", "title": "MainWindow"},
            {"action": "click", "x": 100, "y": 50},
            {"action": "snapshot", "label": "open-and-click-button"}
          ]
        }
      ]
    }
"""

from __future__ import annotations

import json
import re
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar, Dict, List, Optional, Tuple

from .artifacts import CANDIDATE_SUFFIX, SESSION_DIR
from .errors import ScenarioDefinitionError, UnknownScenario, WindowNotFound
from .input import WindowMatcher
from .snapshot import ComparePolicy

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
MAX_WAIT_SECONDS = 60.0


@dataclass(frozen=True)
class ActivateWindow:
    action: ClassVar[str] = "activate_window"
    matcher: WindowMatcher
    timeout: Optional[float] = None

    def execute(self, ctx):
        ctx.window_id = ctx.injector.activate_window(self.matcher, self.timeout)


@dataclass(frozen=True)
class Click:
    """Click at (x, y); relative to the current window unless ``relative`` is False."""
    action: ClassVar[str] = "click"
    x: int
    y: int
    button: int = 1
    relative: bool = True

    def execute(self, ctx):
        window_id = ctx.window_id if self.relative else None
        ctx.injector.click(self.x, self.y, self.button, window_id=window_id)


@dataclass(frozen=True)
class MouseMove:
    action: ClassVar[str] = "mouse_move"
    x: int
    y: int
    relative: bool = True

    def execute(self, ctx):
        ctx.injector.mouse_move(self.x, self.y, window_id=ctx.window_id if self.relative else None)


@dataclass(frozen=True)
class MouseDown:
    action: ClassVar[str] = "mouse_down"
    button: int = 1

    def execute(self, ctx):
        ctx.injector.mouse_down(self.button)


@dataclass(frozen=True)
class MouseUp:
    action: ClassVar[str] = "mouse_up"
    button: int = 1

    def execute(self, ctx):
        ctx.injector.mouse_up(self.button)


@dataclass(frozen=True)
class Key:
    action: ClassVar[str] = "key"
    keys: Tuple[str, ...]

    def execute(self, ctx):
        ctx.injector.send_keys(*self.keys)


@dataclass(frozen=True)
class TypeText:
    action: ClassVar[str] = "type"
    text: str
    delay_ms: int = 30

    def execute(self, ctx):
        ctx.injector.type_text(self.text, self.delay_ms)


@dataclass(frozen=True)
class Wait:
    action: ClassVar[str] = "wait"
    seconds: float

    def execute(self, ctx):
        time.sleep(self.seconds)


@dataclass(frozen=True)
class ResizeWindow:
    action: ClassVar[str] = "resize_window"
    width: int
    height: int

    def execute(self, ctx):
        if ctx.window_id is None:
            raise WindowNotFound("resize_window needs a current window")
        ctx.injector.resize_window(ctx.window_id, self.width, self.height)


@dataclass(frozen=True)
class CloseWindow:
    action: ClassVar[str] = "close_window"

    def execute(self, ctx):
        if ctx.window_id is None:
            raise WindowNotFound("close_window needs a current window")
        ctx.injector.close_window(ctx.window_id)
        ctx.window_id = None


@dataclass(frozen=True)
class SnapshotStep:
    """Capture the display and compare it with ``golden_name``.

    With ``window`` set only the current window is captured instead of the
    whole root window.
    """
    action: ClassVar[str] = "snapshot"
    label: str
    golden_name: str
    policy: Optional[ComparePolicy] = None
    settle_timeout: Optional[float] = None
    window: bool = False

    def execute(self, ctx):
        ctx.check_snapshot(self)


@dataclass(frozen=True)
class Scenario:
    name: str
    steps: Tuple[object, ...] = ()
    args: Optional[Tuple[str, ...]] = None
    ready: Optional[WindowMatcher] = None  # None: any window owned by the app's PID
    policy: ComparePolicy = ComparePolicy()
    description: str = ""

    @property
    def app_args(self) -> Tuple[str, ...]:
        return self.args if self.args is not None else (self.name,)

    @property
    def snapshot_steps(self) -> List[SnapshotStep]:
        return [s for s in self.steps if isinstance(s, SnapshotStep)]


def _require(data: dict, key: str, where: str):
    if key not in data:
        raise ScenarioDefinitionError(f"{where}: missing '{key}'")
    return data[key]


def _parse_matcher(data: dict, where: str) -> WindowMatcher:
    pid = data.get("pid")
    if pid is True or pid is False:
        raise ScenarioDefinitionError(f"{where}: pid must be a number here")
    try:
        return WindowMatcher(title=data.get("title"), wm_class=data.get("class"), pid=pid)
    except ValueError as exc:
        raise ScenarioDefinitionError(f"{where}: {exc}") from exc


def _parse_wait(data: dict, where: str) -> Wait:
    seconds = float(_require(data, "seconds", where))
    if not 0 <= seconds <= MAX_WAIT_SECONDS:
        raise ScenarioDefinitionError(f"{where}: wait must be between 0 and {MAX_WAIT_SECONDS}s")
    return Wait(seconds)


def _parse_key(data: dict, where: str) -> Key:
    keys = _require(data, "keys", where)
    if isinstance(keys, str):
        keys = [keys]
    if not keys:
        raise ScenarioDefinitionError(f"{where}: keys must not be empty")
    return Key(tuple(str(k) for k in keys))


def _parse_snapshot(data: dict, where: str, scenario_name: str) -> SnapshotStep:
    label = data.get("label", scenario_name)
    if not isinstance(label, str) or not label:
        raise ScenarioDefinitionError(f"{where}: label must be a non-empty string")
    golden_name = data.get("golden", f"{label}.png")
    if (not isinstance(golden_name, str) or not golden_name.endswith(".png")
            or not NAME_PATTERN.match(golden_name[:-len(".png")])
            or golden_name.endswith(CANDIDATE_SUFFIX)):
        raise ScenarioDefinitionError(f"{where}: golden must be a plain '<name>.png' file name")
    window = data.get("window", False)
    if not isinstance(window, bool):
        raise ScenarioDefinitionError(f"{where}: window must be true or false")
    policy = None
    if "compare" in data:
        try:
            policy = ComparePolicy.from_dict(data["compare"])
        except (TypeError, ValueError) as exc:
            raise ScenarioDefinitionError(f"{where}: {exc}") from exc
    settle = data.get("settle_timeout")
    return SnapshotStep(label, golden_name, policy, None if settle is None else float(settle), window)


STEP_PARSERS: Dict[str, Callable[[dict, str], object]] = {
    "activate_window": lambda d, w: ActivateWindow(_parse_matcher(d, w), d.get("timeout")),
    "click": lambda d, w: Click(int(_require(d, "x", w)), int(_require(d, "y", w)),
                                int(d.get("button", 1)), bool(d.get("relative", True))),
    "mouse_move": lambda d, w: MouseMove(int(_require(d, "x", w)), int(_require(d, "y", w)),
                                         bool(d.get("relative", True))),
    "mouse_down": lambda d, w: MouseDown(int(d.get("button", 1))),
    "mouse_up": lambda d, w: MouseUp(int(d.get("button", 1))),
    "key": _parse_key,
    "type": lambda d, w: TypeText(str(_require(d, "text", w)), int(d.get("delay_ms", 30))),
    "wait": _parse_wait,
    "resize_window": lambda d, w: ResizeWindow(int(_require(d, "width", w)), int(_require(d, "height", w))),
    "close_window": lambda d, w: CloseWindow(),
}


def parse_scenario(data: dict) -> Scenario:
    if not isinstance(data, dict):
        raise ScenarioDefinitionError(f"Scenario must be an object, got {data!r}")
    name = _require(data, "name", "scenario")
    if not isinstance(name, str) or not NAME_PATTERN.match(name) or name == SESSION_DIR:
        raise ScenarioDefinitionError(
            f"Invalid scenario name {name!r} (allowed: A-Z a-z 0-9 . _ -, starting with a letter or digit)"
        )

    steps = []
    golden_names = set()
    for index, step in enumerate(data.get("steps", []), start=1):
        where = f"{name} step {index}"
        if not isinstance(step, dict):
            raise ScenarioDefinitionError(f"{where}: step must be an object")
        action = _require(step, "action", where)
        try:
            if action == "snapshot":
                parsed = _parse_snapshot(step, where, name)
                if parsed.golden_name in golden_names:
                    raise ScenarioDefinitionError(
                        f"{where}: golden {parsed.golden_name!r} is used twice; give each snapshot a label"
                    )
                golden_names.add(parsed.golden_name)
            elif action in STEP_PARSERS:
                parsed = STEP_PARSERS[action](step, where)
            else:
                raise ScenarioDefinitionError(f"{where}: unknown action {action!r}")
        except (TypeError, ValueError) as exc:
            raise ScenarioDefinitionError(f"{where}: {exc}") from exc
        steps.append(parsed)

    ready = data.get("ready")
    if ready is not None and not isinstance(ready, dict):
        raise ScenarioDefinitionError(f"{name}: 'ready' must be an object")
    if ready is None or ready.get("pid") is True:
        ready_matcher = None
    else:
        ready_matcher = _parse_matcher(ready, f"{name} ready")

    args = data.get("args")
    try:
        policy = ComparePolicy.from_dict(data.get("compare"))
    except (TypeError, ValueError) as exc:
        raise ScenarioDefinitionError(f"{name}: {exc}") from exc

    return Scenario(
        name=name,
        steps=tuple(steps),
        args=None if args is None else tuple(str(a) for a in args),
        ready=ready_matcher,
        policy=policy,
        description=data.get("description", ""),
    )


class ScenarioRegistry:
    """Ordered, read-only collection of scenarios."""

    def __init__(self, scenarios: List[Scenario], app_command: Optional[List[str]] = None):
        self._scenarios: Dict[str, Scenario] = {}
        for scenario in scenarios:
            if scenario.name in self._scenarios:
                raise ScenarioDefinitionError(f"Duplicate scenario name: {scenario.name}")
            self._scenarios[scenario.name] = scenario
        self.app_command = app_command

    def __len__(self) -> int:
        return len(self._scenarios)

    @classmethod
    def from_dict(cls, data: dict) -> "ScenarioRegistry":
        if not isinstance(data, dict) or not isinstance(data.get("scenarios"), list):
            raise ScenarioDefinitionError("Scenario file must contain a 'scenarios' list")
        app = data.get("app")
        if isinstance(app, str):
            app = shlex.split(app)
        return cls([parse_scenario(s) for s in data["scenarios"]], app_command=app)

    @classmethod
    def from_file(cls, path: Path) -> "ScenarioRegistry":
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ScenarioDefinitionError(f"Scenario file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ScenarioDefinitionError(f"Invalid JSON in {path}: {exc}") from exc
        return cls.from_dict(data)

    def names(self) -> List[str]:
        return list(self._scenarios.keys())

    def get(self, name: str) -> Scenario:
        try:
            return self._scenarios[name]
        except KeyError:
            raise UnknownScenario(name) from None

    def discover(self, name_filter: Optional[str] = None) -> List[str]:
        """Scenario names in definition order, optionally filtered by substring."""
        if not name_filter:
            return self.names()
        return [name for name in self._scenarios if name_filter in name]
