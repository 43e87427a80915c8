"""PTY process management: supervised terminal sessions.

Interactive shells and agent CLIs run in managed sessions with a native
pseudo-terminal where the host supports one (plain pipes otherwise),
bounded output buffering for reconnecting UIs, and cleanup on dispose.
"""

from termdeck.pty.backend import BackendFactory, NativeBackend, PipedBackend, ProcessBackend
from termdeck.pty.buffer import OutputBuffer, strip_restore_sequences
from termdeck.pty.errors import SpawnError, TermdeckError
from termdeck.pty.manager import SessionRegistry, TerminalManager
from termdeck.pty.resolver import ExecutableResolver, Resolution
from termdeck.pty.session import BackendKind, Session, SessionKind, SessionStatus

__all__ = [
    "BackendFactory",
    "BackendKind",
    "ExecutableResolver",
    "NativeBackend",
    "OutputBuffer",
    "PipedBackend",
    "ProcessBackend",
    "Resolution",
    "Session",
    "SessionKind",
    "SessionRegistry",
    "SessionStatus",
    "SpawnError",
    "TerminalManager",
    "TermdeckError",
    "strip_restore_sequences",
]
