"""
Virtual display session management.

Provides:
- Preflight checks for the display server and X11 utilities
- Display/port availability checks
- Session lifecycle (Xtigervnc + window manager): start, wait-ready, teardown
- Command execution and screen capture inside a session's display
"""

from __future__ import annotations

import io
import os
import shutil
import socket
import subprocess
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from PIL import Image, ImageGrab

from .errors import (
    PollTimeout,
    PreflightError,
    SessionNotReady,
    SessionStartFailure,
    SessionTimeout,
)
from .polling import poll_until
from .process import ProcessTracker

SERVER_PROCESS = "display-server"
WM_PROCESS = "window-manager"


class SessionState(Enum):
    STARTING = "Starting"
    READY = "Ready"
    FAILED = "Failed"
    TORN_DOWN = "Torn Down"


@dataclass
class SessionConfig:
    """Explicit session parameters; nothing here is process-global."""
    display: int = 1
    rfb_port: int = 5901
    geometry: str = "1280x800"
    depth: int = 24
    password: Optional[str] = None
    server_binary: str = "Xtigervnc"
    server_args: List[str] = field(default_factory=list)
    server_log_level: str = "*:stderr:30"
    window_manager: List[str] = field(default_factory=lambda: ["xfwm4"])
    background: Optional[str] = "#202020"
    ready_timeout: float = 10.0
    poll_interval: float = 0.3
    shutdown_grace: float = 5.0
    wm_restart_budget: int = 3
    screenshot_backend: str = "auto"  # 'auto' | 'xwd+convert' | 'import' | 'pillow'
    log_dir: Optional[Path] = None
    socket_dir: Path = Path("/tmp/.X11-unix")
    lock_dir: Path = Path("/tmp")
    preflight: bool = True

    @property
    def address(self) -> str:
        return f":{self.display}"

    def socket_path(self) -> Path:
        return self.socket_dir / f"X{self.display}"

    def lock_path(self) -> Path:
        return self.lock_dir / f".X{self.display}-lock"


def check_binary(name: str, required: bool = True) -> Optional[str]:
    """Check if a binary exists in PATH."""
    path = shutil.which(name)
    if required and path is None:
        raise PreflightError(f"Required binary not found: {name}")
    return path


def check_port_available(port: int) -> bool:
    """Check if a TCP port is available."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", port))
            return True
    except OSError:
        return False


def check_display_available(config: SessionConfig) -> bool:
    """Check if an X display number is available.

    A display is unavailable if either the X11 UNIX domain socket or the
    legacy lock file exists.
    """
    return not config.socket_path().exists() and not config.lock_path().exists()


def select_screenshot_backend(binaries: Dict[str, str], preferred: str = "auto") -> str:
    """Pick the screenshot backend to use.

    Returns one of "xwd+convert", "import" or "pillow".
    """
    if preferred != "auto":
        if preferred == "xwd+convert" and not ("xwd" in binaries and "convert" in binaries):
            raise PreflightError("Screenshot backend xwd+convert requested but xwd/convert not found")
        if preferred == "import" and "import" not in binaries:
            raise PreflightError("Screenshot backend import requested but ImageMagick import not found")
        if preferred not in ("xwd+convert", "import", "pillow"):
            raise PreflightError(f"Unknown screenshot backend: {preferred}")
        return preferred

    if "xwd" in binaries and "convert" in binaries:
        return "xwd+convert"
    if "import" in binaries:
        return "import"
    return "pillow"


def preflight_check(config: SessionConfig, verbose: bool = False) -> Dict[str, str]:
    """
    Run preflight checks for required dependencies.

    Returns dict of binary paths.
    Raises PreflightError if critical requirements missing.
    """
    binaries = {}

    required = [
        (config.server_binary, "Display server (install tigervnc-standalone-server)"),
        (config.window_manager[0], "Window manager"),
        ("wmctrl", "Window manager control (install wmctrl)"),
        ("xdotool", "X11 automation (install xdotool)"),
    ]
    if config.password:
        required.append(("vncpasswd", "VNC password tool (install tigervnc-tools)"))

    missing = []
    for binary, description in required:
        path = check_binary(binary, required=False)
        if path is None:
            missing.append(f"  - {binary}: {description}")
            continue
        binaries[binary] = path
        if verbose:
            print(f"✓ Found {binary}: {path}")

    if missing:
        raise PreflightError("Missing required binaries:\n" + "\n".join(missing))

    for binary in ("xwd", "convert", "import", "xsetroot"):
        path = check_binary(binary, required=False)
        if path:
            binaries[binary] = path
            if verbose:
                print(f"✓ Found {binary}: {path}")
        elif verbose:
            print(f"⚠ Optional binary not found: {binary}")

    return binaries


class Session:
    """A live virtual display. Owned by :class:`DisplaySessionManager`."""

    def __init__(self, config: SessionConfig, log_dir: Path, tracker: ProcessTracker,
                 screenshot_backend: str = "pillow"):
        self.id = uuid.uuid4().hex[:12]
        self.config = config
        self.log_dir = log_dir
        self.tracker = tracker
        self.screenshot_backend = screenshot_backend
        self.state = SessionState.STARTING
        self.wm_starts = 0
        self.teardown_count = 0
        self._tearing_down = False

    def __repr__(self) -> str:
        return f"Session(id={self.id}, display={self.address}, state={self.state.value})"

    @property
    def address(self) -> str:
        return self.config.address

    @property
    def rfb_port(self) -> int:
        return self.config.rfb_port

    @property
    def server_proc(self) -> Optional[subprocess.Popen]:
        return self.tracker.get(SERVER_PROCESS)

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    def require_ready(self):
        if self.state is not SessionState.READY:
            raise SessionNotReady(
                f"Session {self.id} on {self.address} is {self.state.value}, not Ready"
            )

    def env(self, overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = {**os.environ, "DISPLAY": self.address}
        if overrides:
            env.update(overrides)
        return env

    def log_path(self, role: str) -> Path:
        return self.log_dir / f"{role}.log"

    def run_tool(self, cmd: List[str], timeout: float = 5.0, text: bool = True,
                 input=None) -> subprocess.CompletedProcess:
        """Run a short-lived X11 utility against this display."""
        return subprocess.run(
            cmd,
            env=self.env(),
            capture_output=True,
            text=text,
            input=input,
            timeout=timeout,
        )

    def run_in_display(self, cmd: List[str], name: str,
                       env_overrides: Optional[Dict[str, str]] = None) -> subprocess.Popen:
        """Start a long-running process on this display, logging to ``<name>.log``."""
        log_path = self.log_path(name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "w") as log_file:
            proc = subprocess.Popen(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                preexec_fn=os.setpgrp,
                env=self.env(env_overrides),
            )
        self.tracker.register(name, proc)
        return proc

    def stop_process(self, name: str):
        self.tracker.cleanup(name, timeout=self.config.shutdown_grace)

    def grab_screen(self, window_id: Optional[str] = None) -> Image.Image:
        """Capture the full frame (or one window) as an RGBA image."""
        target = window_id or "root"
        if self.screenshot_backend == "xwd+convert":
            id_args = ["-id", window_id] if window_id else ["-root"]
            raw = self.run_tool(["xwd", "-silent", *id_args], timeout=30.0, text=False)
            if raw.returncode != 0:
                raise RuntimeError(f"xwd failed for {target}: {raw.stderr.decode(errors='replace').strip()}")
            png = self.run_tool(["convert", "xwd:-", "png:-"], timeout=30.0, text=False, input=raw.stdout)
        elif self.screenshot_backend == "import":
            png = self.run_tool(["import", "-window", target, "png:-"], timeout=30.0, text=False)
        elif self.screenshot_backend == "pillow":
            if window_id:
                raise RuntimeError("The pillow screenshot backend only captures the full frame")
            return ImageGrab.grab(xdisplay=self.address).convert("RGBA")
        else:
            raise RuntimeError(f"Unknown screenshot backend: {self.screenshot_backend}")

        if png.returncode != 0:
            raise RuntimeError(
                f"Screenshot capture failed for {target} (backend={self.screenshot_backend}): "
                f"{png.stderr.decode(errors='replace').strip()}"
            )
        with Image.open(io.BytesIO(png.stdout)) as img:
            return img.convert("RGBA")


class DisplaySessionManager:
    """Start, check and tear down the single display session of a run."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.active: Optional[Session] = None

    def log(self, msg: str):
        if self.verbose:
            print(f"[Session] {msg}")

    def start(self, config: SessionConfig) -> Session:
        """Launch the display server without waiting for readiness.

        Raises:
            SessionStartFailure: missing binaries, address in use, launch error.
        """
        if self.active is not None and self.active.state is not SessionState.TORN_DOWN:
            raise SessionStartFailure(
                f"A session is already active on {self.active.address}; "
                "only one session per run is supported"
            )

        binaries = preflight_check(config, verbose=self.verbose) if config.preflight else {}
        backend = select_screenshot_backend(binaries, config.screenshot_backend) if config.preflight \
            else (config.screenshot_backend if config.screenshot_backend != "auto" else "pillow")

        if not check_display_available(config):
            raise SessionStartFailure(f"Display {config.address} already in use")
        if not check_port_available(config.rfb_port):
            raise SessionStartFailure(f"Port {config.rfb_port} already in use")

        log_dir = config.log_dir or Path(tempfile.mkdtemp(prefix="visual-harness-"))
        log_dir.mkdir(parents=True, exist_ok=True)
        session = Session(config, log_dir, ProcessTracker(), screenshot_backend=backend)
        self.active = session

        try:
            cmd = self._server_command(session)
            print(f"Starting display server {config.address} (port {config.rfb_port}) "
                  f"using {os.path.basename(config.server_binary)}...")
            session.run_in_display(cmd, SERVER_PROCESS)
        except (OSError, subprocess.SubprocessError, SessionStartFailure) as exc:
            session.state = SessionState.FAILED
            self.teardown(session)
            if isinstance(exc, SessionStartFailure):
                raise
            raise SessionStartFailure(
                f"Failed to launch {config.server_binary} on {config.address}: {exc}"
            ) from exc

        self.log(f"started {session!r}, logs in {log_dir}")
        return session

    def _server_command(self, session: Session) -> List[str]:
        config = session.config
        cmd = [
            config.server_binary,
            config.address,
            "-rfbport", str(config.rfb_port),
            "-geometry", config.geometry,
            "-depth", str(config.depth),
            "-AlwaysShared=1",
            "-AcceptKeyEvents=1",
            "-AcceptPointerEvents=1",
            "-Log", config.server_log_level,
        ]
        if config.password:
            cmd += ["-SecurityTypes", "VncAuth", "-PasswordFile", str(self._write_password_file(session))]
        else:
            cmd += ["-SecurityTypes", "None"]
        return cmd + list(config.server_args)

    def _write_password_file(self, session: Session) -> Path:
        """Obfuscate the session secret with ``vncpasswd -f``."""
        path = session.log_dir / "passwd"
        result = subprocess.run(
            ["vncpasswd", "-f"],
            input=(session.config.password + "\n").encode(),
            capture_output=True,
            timeout=10.0,
        )
        if result.returncode != 0:
            raise SessionStartFailure(
                f"vncpasswd failed: {result.stderr.decode(errors='replace').strip()}"
            )
        path.write_bytes(result.stdout)
        path.chmod(0o600)
        return path

    def _start_window_manager(self, session: Session):
        session.wm_starts += 1
        print(f"Starting window manager ({session.config.window_manager[0]}) on {session.address}...")
        session.run_in_display(list(session.config.window_manager), WM_PROCESS)

    def _check_ready(self, session: Session) -> bool:
        server = session.server_proc
        if server is None or server.poll() is not None:
            code = None if server is None else server.returncode
            raise SessionStartFailure(
                f"Display server on {session.address} exited (code {code}); "
                f"see {session.log_path(SERVER_PROCESS)}"
            )
        if not session.config.socket_path().exists():
            return False

        if not session.tracker.is_running(WM_PROCESS):
            if session.wm_starts >= session.config.wm_restart_budget:
                raise SessionStartFailure(
                    f"Window manager exited {session.wm_starts} times; "
                    f"see {session.log_path(WM_PROCESS)}"
                )
            if session.wm_starts:
                print(f"⚠ Window manager is not running on {session.address}, restarting it")
            self._start_window_manager(session)
            return False

        try:
            result = session.run_tool(["wmctrl", "-m"])
        except subprocess.TimeoutExpired:
            return False
        return result.returncode == 0

    def wait_ready(self, session: Session, timeout: Optional[float] = None) -> SessionState:
        """Poll until a window manager answers on the session's display.

        Raises:
            SessionTimeout: the deadline elapsed first.
            SessionStartFailure: the display server or window manager died.
        """
        if session.state is SessionState.READY:
            return session.state
        if session.state is not SessionState.STARTING:
            raise SessionStartFailure(f"Cannot wait for {session!r}")

        timeout = session.config.ready_timeout if timeout is None else timeout
        try:
            poll_until(
                lambda: self._check_ready(session),
                timeout=timeout,
                interval=session.config.poll_interval,
                description=f"window manager on {session.address}",
            )
        except PollTimeout as exc:
            session.state = SessionState.FAILED
            raise SessionTimeout(f"Session on {session.address} never became ready: {exc}") from exc
        except (SessionStartFailure, OSError) as exc:
            session.state = SessionState.FAILED
            if isinstance(exc, SessionStartFailure):
                raise
            raise SessionStartFailure(f"Readiness check failed on {session.address}: {exc}") from exc

        if session.config.background:
            # Solid background keeps captures deterministic; cosmetic only.
            try:
                session.run_tool(["xsetroot", "-solid", session.config.background])
            except (OSError, subprocess.TimeoutExpired) as exc:
                print(f"⚠ Could not set background on {session.address}: {exc}")

        session.state = SessionState.READY
        print(f"✓ Display {session.address} ready")
        return session.state

    def teardown(self, session: Optional[Session]):
        """Stop the session's processes and release its display address.

        Idempotent and re-entrant: later calls (including one from a signal
        handler while a teardown is in progress) return immediately. The
        session only becomes TornDown once cleanup has finished; if cleanup
        is interrupted the exception propagates and a later call stops
        whatever processes are still tracked.
        """
        if session is None or session.state is SessionState.TORN_DOWN or session._tearing_down:
            return
        session._tearing_down = True
        try:
            self.log(f"tearing down {session!r}")
            session.tracker.cleanup_all(timeout=session.config.shutdown_grace)
            self._remove_stale_x_files(session.config)
        finally:
            session._tearing_down = False
        session.state = SessionState.TORN_DOWN
        session.teardown_count += 1
        if self.active is session:
            self.active = None

    def _remove_stale_x_files(self, config: SessionConfig):
        # The server normally removes these itself; a SIGKILL leaves them behind.
        for path in (config.socket_path(), config.lock_path()):
            try:
                if path.exists():
                    path.unlink()
            except OSError as exc:
                print(f"⚠ Could not remove stale {path}: {exc}")

    @contextmanager
    def session(self, config: SessionConfig, timeout: Optional[float] = None) -> Iterator[Session]:
        """Acquire a ready session; it is torn down exactly once on exit."""
        session = self.start(config)
        try:
            self.wait_ready(session, timeout)
            yield session
        finally:
            self.teardown(session)
