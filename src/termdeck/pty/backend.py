"""Process backends: one interface over a real PTY and plain pipes.

``NativeBackend`` runs the child on a pseudo-terminal (true resize, one
combined output stream).  ``PipedBackend`` is the fallback when the PTY
facility is missing or broken: stdout and stderr are separate pipes that
both feed the session's output, and resize does nothing.

Both read with blocking ``os.read`` calls in an I/O thread pool and
deliver callbacks on the event loop thread, so everything a callback
touches is single-writer.  ``BackendFactory`` owns the "native available"
flag: probed once, flipped to False at most once, never re-enabled.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import struct
import subprocess
import sys
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, ClassVar

from termdeck.pty.errors import NativeUnavailableError, SpawnError, TermdeckError
from termdeck.pty.resolver import Resolution, is_powershell
from termdeck.pty.session import BackendKind

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], None]

READ_SIZE = 4096

# Each native session holds one I/O thread, each piped session two.  A
# piped reader can outlive its shell while a background child holds the
# pipe.  Four per session at the default cap of 64 sessions.
IO_THREADS = 256

# How long a piped backend waits for its pipes to drain after the
# process exits before reporting the exit.
DRAIN_TIMEOUT = 0.5

PIPED_NOTICE = "[Terminal - piped mode]\r\n"

_POWERSHELL_UTF8 = (
    "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8; "
    "[Console]::InputEncoding = [System.Text.Encoding]::UTF8; "
    "$OutputEncoding = [System.Text.Encoding]::UTF8"
)


def _new_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


class ProcessBackend(ABC):
    """Uniform process control: spawn, write, resize, kill, on_data, on_exit.

    Callbacks are only invoked from the event loop that was running when
    ``spawn`` was called.  Once ``kill`` has been called the backend emits
    nothing further: no more data and no exit notification.
    """

    kind: ClassVar[BackendKind]
    supports_resize: ClassVar[bool] = False

    def __init__(self, executor: Executor | None = None) -> None:
        self._executor = executor
        self._loop: asyncio.AbstractEventLoop | None = None
        self._proc: subprocess.Popen | None = None
        self._data_callbacks: list[DataCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._tasks: list[asyncio.Task] = []
        self._killed = False
        self._exited = False

    def on_data(self, callback: DataCallback) -> None:
        self._data_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    @abstractmethod
    def spawn(
        self,
        path: str,
        args: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 120,
        rows: int = 30,
    ) -> None:
        """Start the process.  Raises ``SpawnError`` on failure."""

    @abstractmethod
    def write(self, data: str) -> None:
        ...

    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal size.  No-op unless ``supports_resize``."""

    @abstractmethod
    def kill(self) -> None:
        """Terminate the process immediately.  Never blocks."""

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def killed(self) -> bool:
        return self._killed

    @property
    def exited(self) -> bool:
        return self._exited

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _attach_loop(self) -> asyncio.AbstractEventLoop:
        # A usage error, not a spawn failure: must not disable native.
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TermdeckError("spawn requires a running event loop") from e
        return self._loop

    def _emit_data(self, text: str) -> None:
        if self._killed or not text:
            return
        for callback in self._data_callbacks:
            try:
                callback(text)
            except Exception:
                logger.exception("Error in data callback (pid=%s)", self.pid)

    def _emit_exit(self, code: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        if self._killed:
            return
        for callback in self._exit_callbacks:
            try:
                callback(code)
            except Exception:
                logger.exception("Error in exit callback (pid=%s)", self.pid)

    async def _wait_exit(self) -> int | None:
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._proc.wait)

    def _signal_group(self) -> None:
        """SIGKILL the child's process group, falling back to the child."""
        if self._proc is None:
            return
        try:
            if sys.platform != "win32":
                # The child leads its own group, which outlives it while
                # background jobs are still running.
                os.killpg(self._proc.pid, signal.SIGKILL)
            else:
                self._proc.kill()
        except ProcessLookupError:
            logger.debug("Process already gone: pid=%d", self._proc.pid)
        except OSError as e:
            logger.warning("Error killing pid %d: %s", self._proc.pid, e)


class NativeBackend(ProcessBackend):
    """Child process on a pseudo-terminal (POSIX ``pty``)."""

    kind = BackendKind.NATIVE
    supports_resize = True

    def __init__(self, executor: Executor | None = None) -> None:
        super().__init__(executor)
        self._master_fd: int = -1

    def spawn(
        self,
        path: str,
        args: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 120,
        rows: int = 30,
    ) -> None:
        loop = self._attach_loop()
        try:
            import fcntl
            import pty
            import termios
        except ImportError as e:
            raise NativeUnavailableError(path, str(e)) from e

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(path, f"openpty failed: {e}") from e

        try:
            _set_winsize(slave_fd, cols, rows)
            self._proc = subprocess.Popen(
                [path, *args],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,  # Own process group for tree kill
                preexec_fn=_controlling_tty_setter(fcntl, termios),
            )
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            os.close(master_fd)
            raise SpawnError(path, str(e)) from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._tasks.append(loop.create_task(self._read_loop()))
        logger.info("Native session started: pid=%d cmd=%s", self._proc.pid, path)

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        decoder = _new_decoder()
        fd = self._master_fd
        try:
            while True:
                try:
                    data = await loop.run_in_executor(self._executor, os.read, fd, READ_SIZE)
                except OSError:
                    # EIO once every slave handle is closed
                    break
                if not data:
                    break
                self._emit_data(decoder.decode(data))
            self._emit_data(decoder.decode(b"", final=True))
        finally:
            try:
                os.close(fd)
            except OSError:
                pass
            self._master_fd = -1
            code = await self._wait_exit()
            logger.info("Native session exited: pid=%s code=%s", self.pid, code)
            self._emit_exit(code)

    def write(self, data: str) -> None:
        if self._master_fd < 0 or self._killed:
            return
        try:
            os.write(self._master_fd, data.encode("utf-8"))
        except OSError as e:
            logger.debug("Write to pid %s failed: %s", self.pid, e)

    def resize(self, cols: int, rows: int) -> None:
        if self._master_fd < 0 or self._killed:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as e:
            logger.debug("Resize of pid %s failed: %s", self.pid, e)

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._signal_group()
        # The reader closes the master fd and reaps the child.
        logger.info("Killed native session pid=%s", self.pid)


class PipedBackend(ProcessBackend):
    """Child process on plain stdin/stdout/stderr pipes.

    Order within stdout and within stderr is preserved; the interleaving
    between them depends on scheduling.
    """

    kind = BackendKind.PIPED

    def spawn(
        self,
        path: str,
        args: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 120,
        rows: int = 30,
    ) -> None:
        loop = self._attach_loop()
        argv = [path, *args]
        if is_powershell(path):
            argv += ["-NoExit", "-Command", _POWERSHELL_UTF8]

        kwargs: dict = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            self._proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=env,
                **kwargs,
            )
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            raise SpawnError(path, str(e)) from e

        self._tasks.append(loop.create_task(self._run()))
        logger.info("Piped session started: pid=%d cmd=%s", self._proc.pid, path)

    async def _run(self) -> None:
        assert self._proc is not None
        self._emit_data(PIPED_NOTICE)
        readers = [
            asyncio.ensure_future(self._read_stream(self._proc.stdout)),
            asyncio.ensure_future(self._read_stream(self._proc.stderr)),
        ]
        self._tasks.extend(readers)
        code = await self._wait_exit()
        # Let output written before exit drain.  Background children may
        # keep the pipes open; their readers carry on until EOF.
        _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
        if pending:
            logger.debug("Pipes of pid=%s still held by child processes", self.pid)
        if self._proc.stdin is not None:
            try:
                self._proc.stdin.close()
            except OSError:
                pass
        logger.info("Piped session exited: pid=%s code=%s", self.pid, code)
        self._emit_exit(code)

    async def _read_stream(self, stream) -> None:
        if stream is None:
            return
        loop = asyncio.get_running_loop()
        decoder = _new_decoder()
        fd = stream.fileno()
        while True:
            try:
                data = await loop.run_in_executor(self._executor, os.read, fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit_data(decoder.decode(data))
        self._emit_data(decoder.decode(b"", final=True))
        stream.close()

    def write(self, data: str) -> None:
        if self._proc is None or self._proc.stdin is None or self._killed:
            return
        try:
            self._proc.stdin.write(data.encode("utf-8"))
            self._proc.stdin.flush()
        except (OSError, ValueError) as e:
            logger.error("Piped process error (pid=%s): %s", self.pid, e)
            self._report_error(str(e))

    def _report_error(self, message: str) -> None:
        text = f"\r\n[Error: {message}]\r\n"
        if self._loop is not None:
            self._loop.call_soon(self._emit_data, text)
        else:
            self._emit_data(text)

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._signal_group()
        logger.info("Killed piped session pid=%s", self.pid)


def probe_native() -> bool:
    """Check once whether the PTY facility works on this host."""
    if sys.platform == "win32":
        return False
    try:
        import fcntl  # noqa: F401
        import pty
        import termios  # noqa: F401

        master_fd, slave_fd = pty.openpty()
    except (ImportError, OSError) as e:
        logger.warning("Native PTY unavailable, using pipes: %s", e)
        return False
    os.close(master_fd)
    os.close(slave_fd)
    return True


class BackendFactory:
    """Chooses and spawns backends, owning the native-availability flag."""

    def __init__(
        self,
        native_enabled: bool = True,
        probe: Callable[[], bool] = probe_native,
        native_cls: type[ProcessBackend] = NativeBackend,
        piped_cls: type[ProcessBackend] = PipedBackend,
        io_threads: int = IO_THREADS,
    ) -> None:
        self._native_cls = native_cls
        self._piped_cls = piped_cls
        self._executor = ThreadPoolExecutor(
            max_workers=io_threads, thread_name_prefix="termdeck-io"
        )
        self._native_available = False
        if native_enabled:
            try:
                self._native_available = probe()
            except Exception as e:
                logger.warning("Native PTY probe failed: %s", e)
        logger.info(
            "Process backend: %s", "native" if self._native_available else "piped"
        )

    @property
    def native_available(self) -> bool:
        return self._native_available

    def disable_native(self, reason: str) -> None:
        if self._native_available:
            logger.warning("Disabling native PTY for this process: %s", reason)
            self._native_available = False

    def spawn(
        self, resolution: Resolution, cwd: str, cols: int = 120, rows: int = 30
    ) -> ProcessBackend:
        """Spawn on Native if available, else Piped.

        Any Native failure disables Native permanently before retrying on
        Piped.  Raises ``SpawnError`` when Piped fails too, and
        ``TermdeckError`` when called outside a running event loop.
        """
        if self._native_available:
            backend = self._native_cls(self._executor)
            try:
                backend.spawn(resolution.path, resolution.args, cwd, resolution.env, cols, rows)
                return backend
            except SpawnError as e:
                self.disable_native(str(e))
            except TermdeckError:
                raise
            except Exception as e:
                logger.exception("Unexpected native spawn failure for %s", resolution.path)
                self.disable_native(f"{type(e).__name__}: {e}")

        backend = self._piped_cls(self._executor)
        backend.spawn(resolution.path, resolution.args, cwd, resolution.env, cols, rows)
        return backend


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    import fcntl
    import termios

    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _controlling_tty_setter(fcntl, termios) -> Callable[[], None]:
    """Build a preexec hook that makes the pty slave (fd 0) the controlling tty.

    Runs in the child after setsid(), so shells get job control.  Modules
    are bound here so the child never imports.
    """

    def _acquire() -> None:
        try:
            fcntl.ioctl(0, termios.TIOCSCTTY, 0)
        except OSError:
            pass

    return _acquire
