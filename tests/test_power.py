"""Tests for termdeck.power."""

from __future__ import annotations

import sys

import pytest

from termdeck.power import SuspendInhibitor, default_inhibit_command

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")


class TestDefaultCommand:
    def test_macos_uses_caffeinate(self) -> None:
        cmd = default_inhibit_command("darwin")
        assert cmd[0] == "caffeinate"
        assert "-w" in cmd

    def test_linux_uses_systemd_inhibit(self) -> None:
        cmd = default_inhibit_command("linux")
        assert cmd[0] == "systemd-inhibit"
        assert "--what=idle:sleep" in cmd

    def test_other_platforms(self) -> None:
        assert default_inhibit_command("win32") is None
        assert default_inhibit_command("freebsd13") is None


@posix_only
class TestSuspendInhibitor:
    def test_follows_session_count(self) -> None:
        inhibitor = SuspendInhibitor(command=["sleep", "30"], platform="linux")
        inhibitor.update(2)
        assert inhibitor.active
        inhibitor.update(1)
        assert inhibitor.active
        inhibitor.update(0)
        assert not inhibitor.active

    def test_acquire_is_idempotent(self) -> None:
        inhibitor = SuspendInhibitor(command=["sleep", "30"], platform="linux")
        inhibitor.acquire()
        first = inhibitor._proc
        inhibitor.acquire()
        assert inhibitor._proc is first
        inhibitor.release()

    def test_release_when_inactive(self) -> None:
        inhibitor = SuspendInhibitor(command=["sleep", "30"], platform="linux")
        inhibitor.release()
        assert not inhibitor.active

    def test_missing_tool_is_noop(self, caplog) -> None:
        inhibitor = SuspendInhibitor(command=["termdeck-no-such-tool"], platform="linux")
        with caplog.at_level("WARNING"):
            inhibitor.update(1)
        assert not inhibitor.active
        assert "No suspend inhibitor" in caplog.text
