"""Terminal Manager: spawns, supervises and tears down terminal sessions."""

from __future__ import annotations

import logging
import sys
from functools import partial
from typing import Any, Protocol

from termdeck.config import TermdeckConfig
from termdeck.pty.backend import IO_THREADS, BackendFactory
from termdeck.pty.buffer import OutputBuffer, strip_restore_sequences
from termdeck.pty.errors import SpawnError
from termdeck.pty.resolver import ExecutableResolver, shell_path_for
from termdeck.pty.session import Session, SessionKind, SessionStatus

logger = logging.getLogger(__name__)


class SessionEventSink(Protocol):
    """Receiver for asynchronous session notifications (e.g. ``Wire``)."""

    def send_output(self, session_id: str, data: str) -> None: ...

    def send_exit(self, session_id: str, exit_code: int | None) -> None: ...

    def send_session_count(self, count: int) -> None: ...


class SessionRegistry:
    """Map from session id to live session; the only record of liveness."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str, session: Session | None = None) -> Session | None:
        """Remove and return the session for ``session_id``.

        If ``session`` is given, only remove when it is still the
        registered instance (a restarted id must not lose its new session).
        """
        current = self._sessions.get(session_id)
        if current is None or (session is not None and current is not session):
            return None
        return self._sessions.pop(session_id)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def values(self) -> list[Session]:
        return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class TerminalManager:
    """Manages the lifecycle of many terminal sessions behind string ids.

    The manager ensures:
    - Sessions are tracked and can be looked up by caller-assigned id
    - Output is buffered per session for reconnecting UIs
    - Restart keeps the id and the scrollback
    - All sessions are killed on dispose (no orphan processes)

    Every method must be called from the event loop thread; backend
    callbacks are delivered there too.  No method raises: failures are
    logged and reported as ``False`` / ``None``.
    """

    def __init__(
        self,
        sink: SessionEventSink | None = None,
        config: TermdeckConfig | None = None,
        resolver: ExecutableResolver | None = None,
        factory: BackendFactory | None = None,
    ) -> None:
        self._config = config or TermdeckConfig()
        terminal = self._config.terminal
        self._sink = sink
        self._resolver = resolver or ExecutableResolver(
            env_snapshot_timeout=terminal.env_snapshot_timeout,
            term_name=terminal.term_name,
        )
        self._factory = factory or BackendFactory(
            native_enabled=terminal.native_enabled,
            io_threads=max(IO_THREADS, 4 * terminal.max_sessions),
        )
        self._registry = SessionRegistry()
        self._disposed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(
        self,
        session_id: str,
        cwd: str,
        kind: SessionKind = SessionKind.INTERACTIVE,
        shell_override: str | None = None,
        agent_variant: str | None = None,
        buffer: OutputBuffer | None = None,
    ) -> bool:
        """Spawn a session under ``session_id``.

        Tries the native PTY first, then pipes.  Returns False when
        neither backend could start the process or the session limit is
        reached.  An existing session under the same id is killed and
        replaced.
        """
        if self._disposed:
            logger.warning("create(%s) after dispose ignored", session_id)
            return False
        replaced = self._discard(session_id)
        if replaced:
            logger.warning("Session %s already exists; replacing it", session_id)

        ok = self._start(session_id, cwd, kind, shell_override, agent_variant, buffer)
        if ok or replaced:
            self._notify_count()
        return ok

    def write(self, session_id: str, data: str) -> None:
        session = self._registry.get(session_id)
        if session is None:
            logger.debug("write to unknown session %s ignored", session_id)
            return
        session.backend.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._registry.get(session_id)
        if session is None or not session.backend.supports_resize:
            return
        session.backend.resize(cols, rows)

    def kill(self, session_id: str) -> bool:
        """Terminate immediately and deregister.  Returns whether it existed."""
        if not self._discard(session_id):
            return False
        logger.info("Killed session %s", session_id)
        self._notify_count()
        return True

    def restart(
        self,
        session_id: str,
        cwd: str,
        shell_override: str | None = None,
        agent_variant: str | None = None,
    ) -> bool:
        """Kill the session and start a fresh one under the same id.

        The new process runs in ``cwd`` and inherits the old scrollback.
        Observers see one session-count notification, after the new
        spawn.  If the spawn fails the id is left unregistered.
        """
        session = self._registry.get(session_id)
        if session is None:
            return False

        scrollback = session.buffer.snapshot()
        kind = session.kind
        agent_variant = agent_variant or session.agent_variant
        self._discard(session_id)

        buffer = OutputBuffer(self._config.buffer.high_water, self._config.buffer.low_water)
        buffer.replace(scrollback)
        ok = self._start(session_id, cwd, kind, shell_override, agent_variant, buffer)
        self._notify_count()
        if ok:
            logger.info("Restarted session %s in %s", session_id, cwd)
        return ok

    def get_cwd(self, session_id: str) -> str | None:
        """Working directory recorded at creation (not the live process cwd)."""
        session = self._registry.get(session_id)
        return session.cwd if session else None

    def exists(self, session_id: str) -> bool:
        return session_id in self._registry

    def get_output_buffer(self, session_id: str) -> str | None:
        """Buffered output for restoring a UI, minus clear/reset sequences."""
        session = self._registry.get(session_id)
        if session is None:
            return None
        return strip_restore_sequences(session.buffer.snapshot())

    def clear_output_buffer(self, session_id: str) -> None:
        """Drop buffered output after the UI has restored it."""
        session = self._registry.get(session_id)
        if session is not None:
            session.buffer.clear()

    def get_session(self, session_id: str) -> Session | None:
        return self._registry.get(session_id)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.describe() for s in self._registry.values()]

    @property
    def native_available(self) -> bool:
        return self._factory.native_available

    def dispose(self) -> None:
        """Kill every session.  No notifications are sent afterwards."""
        self._disposed = True
        for session_id in self._registry.ids():
            self.kill(session_id)
        logger.info("All terminal sessions disposed")

    def __len__(self) -> int:
        return len(self._registry)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(
        self,
        session_id: str,
        cwd: str,
        kind: SessionKind,
        shell_override: str | None,
        agent_variant: str | None,
        buffer: OutputBuffer | None,
    ) -> bool:
        terminal = self._config.terminal
        if len(self._registry) >= terminal.max_sessions:
            logger.error(
                "Cannot create session %s: limit of %d sessions reached",
                session_id,
                terminal.max_sessions,
            )
            return False

        if shell_override is None and kind is SessionKind.INTERACTIVE:
            shell_override = shell_path_for(terminal.shell, terminal.custom_shell_path)
        if agent_variant is None and kind is SessionKind.AGENT:
            agent_variant = terminal.agent_variant

        try:
            resolution = self._resolver.resolve(
                kind, sys.platform, override=shell_override, agent_variant=agent_variant
            )
            backend = self._factory.spawn(resolution, cwd, terminal.cols, terminal.rows)
        except SpawnError as e:
            logger.error("Failed to create session %s: %s", session_id, e)
            return False
        except Exception:
            logger.exception("Failed to create session %s", session_id)
            return False

        if buffer is None:
            buffer = OutputBuffer(self._config.buffer.high_water, self._config.buffer.low_water)
        session = Session(
            id=session_id,
            kind=kind,
            cwd=cwd,
            backend=backend,
            buffer=buffer,
            shell_override=shell_override,
            agent_variant=agent_variant,
        )
        backend.on_data(partial(self._handle_data, session))
        backend.on_exit(partial(self._handle_exit, session))
        self._registry.add(session)

        logger.info(
            "Created session %s (%s, %s backend) in %s: %s",
            session_id,
            kind.value,
            backend.kind.value,
            cwd,
            " ".join(resolution.argv),
        )
        return True

    def _discard(self, session_id: str) -> bool:
        """Deregister and kill without notifying.  Returns whether it existed."""
        session = self._registry.remove(session_id)
        if session is None:
            return False
        session.status = SessionStatus.KILLED
        session.backend.kill()
        return True

    # ------------------------------------------------------------------
    # Backend callbacks
    # ------------------------------------------------------------------

    def _handle_data(self, session: Session, data: str) -> None:
        session.buffer.append(data)
        if self._sink is not None and not self._disposed:
            self._sink.send_output(session.id, data)

    def _handle_exit(self, session: Session, exit_code: int | None) -> None:
        if self._registry.remove(session.id, session) is None:
            return
        session.status = SessionStatus.EXITED
        logger.info("Session %s exited (code=%s)", session.id, exit_code)
        if self._sink is not None and not self._disposed:
            self._sink.send_exit(session.id, exit_code)
        self._notify_count()

    def _notify_count(self) -> None:
        if self._sink is None or self._disposed:
            return
        try:
            self._sink.send_session_count(len(self._registry))
        except Exception:
            logger.exception("Error in session-count notification")
