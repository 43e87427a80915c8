"""Keep the host awake while terminal sessions are running.

Wire ``SuspendInhibitor.update`` to the manager's session-count
notification: the inhibitor is held while the count is nonzero and
released when it drops to zero.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys

logger = logging.getLogger(__name__)

# SetThreadExecutionState flags
_ES_CONTINUOUS = 0x80000000
_ES_SYSTEM_REQUIRED = 0x00000001


def default_inhibit_command(platform: str | None = None) -> list[str] | None:
    """Helper process that blocks idle sleep while alive, or None."""
    platform = platform or sys.platform
    if platform == "darwin":
        return ["caffeinate", "-i", "-w", str(os.getpid())]
    if platform.startswith("linux"):
        return [
            "systemd-inhibit",
            "--what=idle:sleep",
            "--who=termdeck",
            "--why=Terminal sessions are running",
            "--mode=block",
            "sleep",
            "infinity",
        ]
    return None


class SuspendInhibitor:
    def __init__(self, command: list[str] | None = None, platform: str | None = None) -> None:
        self._platform = platform or sys.platform
        self._command = command if command is not None else default_inhibit_command(self._platform)
        self._proc: subprocess.Popen | None = None
        self._win_active = False

    @property
    def active(self) -> bool:
        if self._proc is not None:
            return self._proc.poll() is None
        return self._win_active

    def update(self, session_count: int) -> None:
        if session_count > 0:
            self.acquire()
        else:
            self.release()

    def acquire(self) -> None:
        if self.active:
            return
        if self._platform == "win32" and self._command is None:
            self._set_windows_state(_ES_CONTINUOUS | _ES_SYSTEM_REQUIRED)
            self._win_active = True
            return
        if not self._command or shutil.which(self._command[0]) is None:
            logger.warning("No suspend inhibitor available on %s", self._platform)
            return
        try:
            self._proc = subprocess.Popen(
                self._command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Could not start suspend inhibitor: %s", e)
            return
        logger.info("Suspend inhibitor started: pid=%d", self._proc.pid)

    def release(self) -> None:
        """Stop inhibiting.  Safe to call when not active."""
        if self._win_active:
            self._set_windows_state(_ES_CONTINUOUS)
            self._win_active = False
        if self._proc is None:
            return
        proc, self._proc = self._proc, None
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        logger.info("Suspend inhibitor stopped")

    @staticmethod
    def _set_windows_state(flags: int) -> None:
        import ctypes

        ctypes.windll.kernel32.SetThreadExecutionState(flags)  # type: ignore[attr-defined]
