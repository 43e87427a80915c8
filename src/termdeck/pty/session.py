"""Session record: one supervised process plus its identity and history."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from termdeck.pty.buffer import OutputBuffer

if TYPE_CHECKING:
    from termdeck.pty.backend import ProcessBackend


class SessionKind(enum.Enum):
    """What a session runs."""

    INTERACTIVE = "interactive"  # the user's shell
    AGENT = "agent"  # an external command-line assistant


class BackendKind(enum.Enum):
    NATIVE = "native"
    PIPED = "piped"


class SessionStatus(enum.Enum):
    """Lifecycle states for a session."""

    RUNNING = "running"
    EXITED = "exited"  # Process exited on its own
    KILLED = "killed"  # Killed by us


@dataclass
class Session:
    """A registered session.

    The backend (and the process behind it) is owned exclusively by this
    record.  A restart builds a new ``Session`` under the same id; the
    old record is never revived.
    """

    id: str
    kind: SessionKind
    cwd: str
    backend: ProcessBackend
    buffer: OutputBuffer = field(default_factory=OutputBuffer)
    shell_override: str | None = None
    agent_variant: str | None = None
    created_at: float = field(default_factory=time.time)
    status: SessionStatus = SessionStatus.RUNNING

    @property
    def backend_kind(self) -> BackendKind:
        return self.backend.kind

    @property
    def alive(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def describe(self) -> dict[str, object]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "cwd": self.cwd,
            "backend": self.backend_kind.value,
            "pid": self.backend.pid,
            "status": self.status.value,
            "buffered": self.buffer.size,
        }
