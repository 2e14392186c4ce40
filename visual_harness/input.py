"""Synthetic input for a display session (xdotool / wmctrl)."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import List, Optional

from .errors import InputError, PollTimeout, WindowNotFound
from .polling import poll_until


@dataclass(frozen=True)
class WindowMatcher:
    """Selects windows by title, WM_CLASS or owning PID.

    ``title`` and ``wm_class`` are regular expressions as understood by
    ``xdotool search``.
    """
    title: Optional[str] = None
    wm_class: Optional[str] = None
    pid: Optional[int] = None

    def __post_init__(self):
        if self.title is None and self.wm_class is None and self.pid is None:
            raise ValueError("WindowMatcher needs a title, wm_class or pid")

    def search_args(self) -> List[str]:
        args = ["search", "--onlyvisible"]
        if self.pid is not None:
            args += ["--pid", str(self.pid)]
        if self.title is not None:
            args += ["--name", self.title]
        if self.wm_class is not None:
            args += ["--class", self.wm_class]
        return args

    def describe(self) -> str:
        parts = []
        if self.title is not None:
            parts.append(f"title={self.title!r}")
        if self.wm_class is not None:
            parts.append(f"class={self.wm_class!r}")
        if self.pid is not None:
            parts.append(f"pid={self.pid}")
        return ", ".join(parts)


class InputInjector:
    """Send pointer/keyboard events and window requests into a session.

    Every operation requires the session to be Ready and raises
    :class:`SessionNotReady` otherwise; that is a programming error and is
    never retried. Window lookups and activation are retried because windows
    appear asynchronously after the application starts.
    """

    def __init__(self, session, activation_timeout: float = 5.0,
                 poll_interval: float = 0.2, backoff: float = 1.5,
                 max_interval: float = 1.0, verbose: bool = False):
        self.session = session
        self.activation_timeout = activation_timeout
        self.poll_interval = poll_interval
        self.backoff = backoff
        self.max_interval = max_interval
        self.verbose = verbose

    def log(self, msg: str):
        if self.verbose:
            print(f"[Input] {msg}")

    def _run(self, tool: str, args: List[str], timeout: float = 10.0,
             check: bool = True) -> subprocess.CompletedProcess:
        self.session.require_ready()
        cmd = [tool, *args]
        try:
            result = self.session.run_tool(cmd, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise InputError(f"{tool} {args[0]} timed out after {timeout}s") from exc
        except OSError as exc:
            raise InputError(f"Failed to run {tool}: {exc}") from exc
        if check and result.returncode != 0:
            raise InputError(f"{tool} {' '.join(args)} failed: {(result.stderr or '').strip()}")
        return result

    def _xdotool(self, *args: str, timeout: float = 10.0) -> subprocess.CompletedProcess:
        return self._run("xdotool", list(args), timeout=timeout)

    # Windows

    def find_windows(self, matcher: WindowMatcher) -> List[str]:
        """Return ids of visible windows matching ``matcher`` (possibly empty)."""
        # xdotool search exits 1 when nothing matches.
        result = self._run("xdotool", matcher.search_args(), check=False)
        if result.returncode not in (0, 1):
            raise InputError(f"xdotool search failed: {(result.stderr or '').strip()}")
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def wait_for_window(self, matcher: WindowMatcher, timeout: Optional[float] = None,
                        still_running=None) -> str:
        """Poll until a matching window exists and return its id.

        ``still_running`` is an optional check called before every attempt; it
        may raise to abort the wait (e.g. when the application exited).

        Raises:
            PollTimeout: no window appeared before the deadline.
        """
        self.session.require_ready()

        def attempt() -> Optional[str]:
            if still_running is not None:
                still_running()
            windows = self.find_windows(matcher)
            return windows[0] if windows else None

        return poll_until(
            attempt,
            timeout=self.activation_timeout if timeout is None else timeout,
            interval=self.poll_interval,
            backoff=self.backoff,
            max_interval=self.max_interval,
            description=f"window ({matcher.describe()})",
        )

    def activate_window(self, matcher: WindowMatcher, timeout: Optional[float] = None) -> str:
        """Activate the first matching window and return its id.

        Raises:
            WindowNotFound: no matching window could be activated in time.
        """
        self.session.require_ready()

        def attempt() -> Optional[str]:
            for win_id in self.find_windows(matcher):
                result = self._run("xdotool", ["windowactivate", "--sync", win_id], check=False)
                if result.returncode == 0:
                    return win_id
                self.log(f"window {win_id} not focusable yet: {(result.stderr or '').strip()}")
            return None

        try:
            win_id = poll_until(
                attempt,
                timeout=self.activation_timeout if timeout is None else timeout,
                interval=self.poll_interval,
                backoff=self.backoff,
                max_interval=self.max_interval,
                description=f"activatable window ({matcher.describe()})",
            )
        except PollTimeout as exc:
            raise WindowNotFound(f"No window matching {matcher.describe()}: {exc}") from exc
        self.log(f"activated window {win_id} ({matcher.describe()})")
        return win_id

    def active_window_id(self) -> str:
        return self._xdotool("getactivewindow").stdout.strip()

    def resize_window(self, win_id: str, width: int, height: int):
        self._xdotool("windowsize", "--sync", win_id, str(width), str(height))

    def close_window(self, win_id: str):
        # `xdotool windowclose` destroys instead of asking the client to close.
        self._run("wmctrl", ["-i", "-c", win_id])

    # Pointer

    def mouse_move(self, x: int, y: int, window_id: Optional[str] = None):
        """Move the pointer; coordinates are relative to ``window_id`` if given."""
        args = ["mousemove"]
        if window_id is not None:
            args += ["--window", window_id]
        self._xdotool(*args, "--sync", str(x), str(y))

    def click(self, x: int, y: int, button: int = 1, window_id: Optional[str] = None):
        self.mouse_move(x, y, window_id=window_id)
        self._xdotool("click", str(button))
        self.log(f"click button {button} at ({x}, {y})" + (f" in {window_id}" if window_id else ""))

    def mouse_down(self, button: int = 1):
        self._xdotool("mousedown", str(button))

    def mouse_up(self, button: int = 1):
        self._xdotool("mouseup", str(button))

    # Keyboard

    def send_keys(self, *keys: str, window_id: Optional[str] = None):
        """Press key combinations such as ``"ctrl+a"`` or ``"Return"``."""
        if not keys:
            raise ValueError("send_keys needs at least one key")
        args = ["key", "--clearmodifiers"]
        if window_id is not None:
            args += ["--window", window_id]
        self._xdotool(*args, *keys)

    def type_text(self, text: str, delay_ms: int = 30):
        self._xdotool("type", "--delay", str(delay_ms), text, timeout=60.0)
