"""Process-group tracking for child processes started by the harness."""

import os
import signal
import subprocess
import time
from typing import Dict, List, Optional


class ProcessTracker:
    """Track all processes we start for safe cleanup.

    Every child is started in its own process group (``preexec_fn=os.setpgrp``)
    so that terminating the group also reaches grandchildren such as the
    session scripts spawned by a window manager.
    """

    def __init__(self):
        self.processes: Dict[str, subprocess.Popen] = {}
        self.pgids: Dict[str, int] = {}

    def register(self, name: str, proc: subprocess.Popen):
        """Register a process we own."""
        self.processes[name] = proc
        try:
            self.pgids[name] = os.getpgid(proc.pid)
        except ProcessLookupError:
            pass  # Process already exited

    def get(self, name: str) -> Optional[subprocess.Popen]:
        return self.processes.get(name)

    def names(self) -> List[str]:
        return list(self.processes.keys())

    def is_running(self, name: str) -> bool:
        proc = self.processes.get(name)
        return proc is not None and proc.poll() is None

    def cleanup(self, name: str, timeout: float = 5.0):
        """Terminate a process tree, escalating to SIGKILL after ``timeout``.

        Safe to call repeatedly and for names that were never registered. The
        entry is only forgotten once the process has been reaped, so a cleanup
        interrupted part way can be retried.
        """
        proc = self.processes.get(name)
        pgid = self.pgids.get(name)
        if proc is None:
            return

        if pgid is not None:
            # The leader may already be gone while the group lives on.
            try:
                os.killpg(pgid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pgid = None
        elif proc.poll() is None:
            proc.terminate()

        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            if pgid is not None:
                try:
                    os.killpg(pgid, signal.SIGKILL)
                except (ProcessLookupError, PermissionError):
                    proc.kill()
            else:
                proc.kill()
            proc.wait(timeout=1.0)

        self.processes.pop(name, None)
        self.pgids.pop(name, None)

    def cleanup_all(self, timeout: float = 5.0, settle: float = 0.0):
        """Clean up all tracked processes, most recently started first."""
        for name in reversed(list(self.processes.keys())):
            self.cleanup(name, timeout=timeout)

        # Give the system a moment to tear down listening sockets.
        if settle > 0:
            time.sleep(settle)
