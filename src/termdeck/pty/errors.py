"""Exceptions raised by the process backends."""

from __future__ import annotations


class TermdeckError(Exception):
    """Base class for termdeck errors."""


class SpawnError(TermdeckError):
    """A backend could not start the requested process."""

    def __init__(self, executable: str, reason: str) -> None:
        super().__init__(f"Failed to spawn {executable}: {reason}")
        self.executable = executable
        self.reason = reason


class NativeUnavailableError(SpawnError):
    """The native pseudo-terminal facility is missing or disabled."""
