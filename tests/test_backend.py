"""Tests for termdeck.pty.backend (factory selection and real processes)."""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

from termdeck.pty.backend import (
    PIPED_NOTICE,
    BackendFactory,
    NativeBackend,
    PipedBackend,
    ProcessBackend,
    probe_native,
)
from termdeck.pty.errors import SpawnError, TermdeckError
from termdeck.pty.resolver import Resolution
from termdeck.pty.session import BackendKind

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


class RecordingBackend(ProcessBackend):
    """Backend that records spawns instead of starting processes."""

    kind = BackendKind.PIPED
    spawned: list[tuple[str, str]] = []

    def spawn(self, path, args, cwd, env, cols=120, rows=30) -> None:
        self.spawned.append((type(self).__name__, path))

    def write(self, data: str) -> None:
        pass

    def kill(self) -> None:
        self._killed = True


class GoodNative(RecordingBackend):
    kind = BackendKind.NATIVE
    supports_resize = True


class BadNative(RecordingBackend):
    kind = BackendKind.NATIVE

    def spawn(self, path, args, cwd, env, cols=120, rows=30) -> None:
        self.spawned.append(("BadNative", path))
        raise SpawnError(path, "pty broken")


class CrashingNative(RecordingBackend):
    kind = BackendKind.NATIVE

    def spawn(self, path, args, cwd, env, cols=120, rows=30) -> None:
        raise RuntimeError("binding crashed")


class GoodPiped(RecordingBackend):
    pass


class BadPiped(RecordingBackend):
    def spawn(self, path, args, cwd, env, cols=120, rows=30) -> None:
        raise SpawnError(path, "no such file")


RES = Resolution(path="/bin/sh", args=[], env={})


@pytest.fixture(autouse=True)
def _reset_spawned():
    RecordingBackend.spawned = []
    yield


def run_async(coro):
    return asyncio.run(coro)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


def sh_env() -> dict[str, str]:
    env = dict(os.environ)
    env["PS1"] = "$ "
    return env


# ---------------------------------------------------------------------------
# BackendFactory
# ---------------------------------------------------------------------------


class TestBackendFactory:
    def test_uses_native_when_available(self) -> None:
        factory = BackendFactory(probe=lambda: True, native_cls=GoodNative, piped_cls=GoodPiped)
        backend = factory.spawn(RES, "/tmp")
        assert isinstance(backend, GoodNative)
        assert factory.native_available

    def test_uses_piped_when_probe_fails(self) -> None:
        factory = BackendFactory(probe=lambda: False, native_cls=GoodNative, piped_cls=GoodPiped)
        backend = factory.spawn(RES, "/tmp")
        assert isinstance(backend, GoodPiped)
        assert RecordingBackend.spawned == [("GoodPiped", "/bin/sh")]

    def test_probe_exception_means_unavailable(self) -> None:
        def probe() -> bool:
            raise RuntimeError("probe exploded")

        factory = BackendFactory(probe=probe, native_cls=GoodNative, piped_cls=GoodPiped)
        assert not factory.native_available

    def test_native_disabled_by_config(self) -> None:
        factory = BackendFactory(
            native_enabled=False, probe=lambda: True, native_cls=GoodNative, piped_cls=GoodPiped
        )
        assert not factory.native_available
        assert isinstance(factory.spawn(RES, "/tmp"), GoodPiped)

    def test_native_failure_disables_native_permanently(self) -> None:
        factory = BackendFactory(probe=lambda: True, native_cls=BadNative, piped_cls=GoodPiped)
        first = factory.spawn(RES, "/tmp")
        second = factory.spawn(RES, "/tmp")
        assert isinstance(first, GoodPiped)
        assert isinstance(second, GoodPiped)
        assert not factory.native_available
        # Native was only attempted once
        assert [name for name, _ in RecordingBackend.spawned].count("BadNative") == 1

    def test_unexpected_native_error_falls_back(self) -> None:
        factory = BackendFactory(probe=lambda: True, native_cls=CrashingNative, piped_cls=GoodPiped)
        backend = factory.spawn(RES, "/tmp")
        assert isinstance(backend, GoodPiped)
        assert not factory.native_available

    def test_no_running_loop_keeps_native(self) -> None:
        factory = BackendFactory(probe=lambda: True, native_cls=NativeBackend, piped_cls=GoodPiped)
        with pytest.raises(TermdeckError):
            factory.spawn(RES, "/tmp")
        assert factory.native_available
        assert RecordingBackend.spawned == []

    def test_both_fail_raises(self) -> None:
        factory = BackendFactory(probe=lambda: True, native_cls=BadNative, piped_cls=BadPiped)
        with pytest.raises(SpawnError):
            factory.spawn(RES, "/tmp")

    def test_disable_native_is_one_way(self) -> None:
        factory = BackendFactory(probe=lambda: True, native_cls=GoodNative, piped_cls=GoodPiped)
        factory.disable_native("test")
        factory.disable_native("again")
        assert not factory.native_available


class TestProbe:
    @pytest.mark.skipif(sys.platform != "win32", reason="Windows only")
    def test_windows_has_no_native(self) -> None:
        assert probe_native() is False

    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="Linux only")
    def test_linux_has_native(self) -> None:
        assert probe_native() is True


# ---------------------------------------------------------------------------
# Callback rules
# ---------------------------------------------------------------------------


class TestEmitRules:
    def test_no_data_after_kill(self) -> None:
        backend = GoodPiped()
        got: list[str] = []
        backend.on_data(got.append)
        backend._emit_data("a")
        backend.kill()
        backend._emit_data("b")
        assert got == ["a"]

    def test_exit_suppressed_after_kill(self) -> None:
        backend = GoodPiped()
        codes: list[int | None] = []
        backend.on_exit(codes.append)
        backend.kill()
        backend._emit_exit(0)
        assert codes == []
        assert backend.exited

    def test_exit_fires_once(self) -> None:
        backend = GoodPiped()
        codes: list[int | None] = []
        backend.on_exit(codes.append)
        backend._emit_exit(1)
        backend._emit_exit(2)
        assert codes == [1]

    def test_callback_error_does_not_propagate(self) -> None:
        backend = GoodPiped()
        got: list[str] = []

        def bad(_: str) -> None:
            raise ValueError("consumer bug")

        backend.on_data(bad)
        backend.on_data(got.append)
        backend._emit_data("x")
        assert got == ["x"]

    def test_base_resize_is_noop(self) -> None:
        backend = GoodPiped()
        backend.resize(80, 24)
        assert not backend.supports_resize


# ---------------------------------------------------------------------------
# NativeBackend with real processes
# ---------------------------------------------------------------------------


@posix_only
class TestNativeBackend:
    def test_output_and_exit_code(self, tmp_path) -> None:
        async def scenario():
            backend = NativeBackend()
            out: list[str] = []
            codes: list[int | None] = []
            backend.on_data(out.append)
            backend.on_exit(codes.append)
            backend.spawn("/bin/sh", ["-c", "echo hello; exit 3"], str(tmp_path), sh_env())
            await wait_until(lambda: bool(codes))
            return "".join(out), codes

        out, codes = run_async(scenario())
        assert "hello" in out
        assert codes == [3]

    def test_runs_in_cwd(self, tmp_path) -> None:
        async def scenario():
            backend = NativeBackend()
            out: list[str] = []
            done: list[int | None] = []
            backend.on_data(out.append)
            backend.on_exit(done.append)
            backend.spawn("/bin/sh", ["-c", "pwd"], str(tmp_path), sh_env())
            await wait_until(lambda: bool(done))
            return "".join(out)

        assert os.path.realpath(str(tmp_path)) in run_async(scenario())

    def test_write_and_resize(self, tmp_path) -> None:
        async def scenario():
            backend = NativeBackend()
            out: list[str] = []
            backend.on_data(out.append)
            backend.spawn("/bin/sh", [], str(tmp_path), sh_env(), cols=100, rows=40)
            backend.write("stty size\n")
            await wait_until(lambda: "40 100" in "".join(out))
            backend.resize(132, 50)
            backend.write("stty size\n")
            await wait_until(lambda: "50 132" in "".join(out))
            backend.kill()

        run_async(scenario())

    def test_kill_suppresses_exit(self, tmp_path) -> None:
        async def scenario():
            backend = NativeBackend()
            codes: list[int | None] = []
            backend.on_exit(codes.append)
            backend.spawn("/bin/sh", ["-c", "sleep 30"], str(tmp_path), sh_env())
            backend.kill()
            await wait_until(lambda: backend.exited)
            return codes

        assert run_async(scenario()) == []

    def test_missing_executable_raises_spawn_error(self, tmp_path) -> None:
        async def scenario():
            backend = NativeBackend()
            with pytest.raises(SpawnError):
                backend.spawn(str(tmp_path / "nope"), [], str(tmp_path), sh_env())

        run_async(scenario())


# ---------------------------------------------------------------------------
# PipedBackend with real processes
# ---------------------------------------------------------------------------


@posix_only
class TestPipedBackend:
    def test_notice_is_first_output(self, tmp_path) -> None:
        async def scenario():
            backend = PipedBackend()
            out: list[str] = []
            done: list[int | None] = []
            backend.on_data(out.append)
            backend.on_exit(done.append)
            backend.spawn("/bin/sh", ["-c", "echo piped"], str(tmp_path), sh_env())
            await wait_until(lambda: bool(done))
            return out, done

        out, done = run_async(scenario())
        assert out[0] == PIPED_NOTICE
        assert "piped\n" in "".join(out[1:])
        assert done == [0]

    def test_exit_not_held_by_background_child(self, tmp_path) -> None:
        async def scenario():
            backend = PipedBackend()
            codes: list[int | None] = []
            backend.on_exit(codes.append)
            loop = asyncio.get_running_loop()
            started = loop.time()
            backend.spawn("/bin/sh", ["-c", "sleep 5 & exit 7"], str(tmp_path), sh_env())
            try:
                await wait_until(lambda: bool(codes), timeout=3.0)
                return codes, loop.time() - started
            finally:
                # The background sleep is still in the process group
                backend.kill()

        codes, elapsed = run_async(scenario())
        assert codes == [7]
        assert elapsed < 3.0

    def test_stdout_and_stderr_both_delivered(self, tmp_path) -> None:
        script = "echo out1; echo err1 1>&2; echo out2; echo err2 1>&2"

        async def scenario():
            backend = PipedBackend()
            out: list[str] = []
            done: list[int | None] = []
            backend.on_data(out.append)
            backend.on_exit(done.append)
            backend.spawn("/bin/sh", ["-c", script], str(tmp_path), sh_env())
            await wait_until(lambda: bool(done))
            return "".join(out)

        text = run_async(scenario())
        # Only order within each stream is guaranteed
        assert text.index("out1") < text.index("out2")
        assert text.index("err1") < text.index("err2")

    def test_write_goes_to_stdin(self, tmp_path) -> None:
        async def scenario():
            backend = PipedBackend()
            out: list[str] = []
            backend.on_data(out.append)
            backend.spawn("/bin/sh", [], str(tmp_path), sh_env())
            backend.write("echo $((6*7))\n")
            await wait_until(lambda: "42\n" in "".join(out))
            backend.kill()

        run_async(scenario())

    def test_resize_is_noop(self, tmp_path) -> None:
        async def scenario():
            backend = PipedBackend()
            backend.spawn("/bin/sh", [], str(tmp_path), sh_env())
            backend.resize(80, 24)
            assert not backend.supports_resize
            backend.kill()

        run_async(scenario())

    def test_write_after_exit_reports_error(self, tmp_path) -> None:
        async def scenario():
            backend = PipedBackend()
            out: list[str] = []
            done: list[int | None] = []
            backend.on_data(out.append)
            backend.on_exit(done.append)
            backend.spawn("/bin/sh", ["-c", "exec 0<&-; sleep 0.3"], str(tmp_path), sh_env())
            await asyncio.sleep(0.1)
            backend.write("x" * 200_000)
            await wait_until(lambda: any("[Error:" in chunk for chunk in out))
            await wait_until(lambda: bool(done))

        run_async(scenario())

    def test_missing_executable_raises_spawn_error(self, tmp_path) -> None:
        async def scenario():
            backend = PipedBackend()
            with pytest.raises(SpawnError):
                backend.spawn(str(tmp_path / "nope"), [], str(tmp_path), sh_env())

        run_async(scenario())
