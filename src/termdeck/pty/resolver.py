"""Executable resolution: which program to run for a session, and with what environment.

Interactive sessions run the user's shell (an explicit override, else the
platform default).  Agent sessions run a command-line assistant found in
one of the usual install locations, falling back to a bare name for PATH
lookup.  The environment merges, lowest priority first:

1. a snapshot of the user's login-shell environment (GUI-launched
   processes never see profile exports otherwise),
2. the current process environment,
3. forced UTF-8 locale and terminal variables,
4. PATH augmented with package-manager bin directories.
"""

from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from termdeck.pty.session import SessionKind

logger = logging.getLogger(__name__)

POWERSHELL_ARGS = ["-ExecutionPolicy", "Bypass", "-NoLogo"]

UTF8_ENV = {
    "LANG": "en_US.UTF-8",
    "LC_ALL": "en_US.UTF-8",
    "PYTHONIOENCODING": "utf-8",
    "PYTHONUTF8": "1",
}

DEFAULT_AGENT = "claude"

# Agent variant -> executable name
AGENT_BINARIES = {
    "claude": "claude",
    "happy": "happy",
}

# Shell-internal variables that must not leak from the login snapshot
_SNAPSHOT_SKIP = {"PWD", "OLDPWD", "SHLVL", "_"}

_ENV_BEGIN = "__TERMDECK_ENV_BEGIN__"
_ENV_END = "__TERMDECK_ENV_END__"
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class Resolution:
    """Everything needed to spawn a session's process."""

    path: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]


def is_powershell(executable: str) -> bool:
    name = executable.replace("\\", "/").rsplit("/", 1)[-1].lower()
    return "pwsh" in name or "powershell" in name


def _pathmod(platform: str):
    return ntpath if platform == "win32" else posixpath


def _version_key(name: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", name))


def parse_env_output(text: str) -> dict[str, str]:
    """Parse ``env`` output framed by the snapshot markers.

    Lines that do not start a new ``KEY=value`` pair are treated as
    continuations of a multi-line value.  Anything the shell prints
    outside the markers (banners, motd) is ignored.
    """
    start = text.find(_ENV_BEGIN)
    end = text.find(_ENV_END, start + 1)
    if start == -1 or end == -1:
        return {}
    body = text[start + len(_ENV_BEGIN) : end].strip("\n")

    env: dict[str, str] = {}
    last_key: str | None = None
    for line in body.split("\n"):
        key, sep, value = line.partition("=")
        if sep and _ENV_KEY_RE.match(key):
            env[key] = value
            last_key = key
        elif last_key is not None:
            env[last_key] += "\n" + line
    for key in _SNAPSHOT_SKIP:
        env.pop(key, None)
    return env


class ExecutableResolver:
    """Resolves (path, args, env) for a session kind on a platform.

    ``environ``, ``home`` and ``exists`` are injectable so resolution for
    another platform can be exercised from any host.  The login-shell
    snapshot is taken at most once per resolver.
    """

    def __init__(
        self,
        env_snapshot_timeout: float = 5.0,
        term_name: str = "xterm-256color",
        environ: Mapping[str, str] | None = None,
        home: str | None = None,
        exists: Callable[[str], bool] | None = None,
    ) -> None:
        self.env_snapshot_timeout = env_snapshot_timeout
        self.term_name = term_name
        self._environ = environ if environ is not None else os.environ
        self._home = home or os.path.expanduser("~")
        self._exists = exists or os.path.exists
        self._login_env: dict[str, str] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(
        self,
        kind: SessionKind,
        platform: str | None = None,
        override: str | None = None,
        agent_variant: str | None = None,
    ) -> Resolution:
        platform = platform or sys.platform
        if kind is SessionKind.AGENT:
            path = self.find_agent(agent_variant or DEFAULT_AGENT, platform)
            args: list[str] = []
        else:
            path = override or self.default_shell(platform)
            args = list(POWERSHELL_ARGS) if is_powershell(path) else []
        return Resolution(path=path, args=args, env=self.build_env(platform))

    def default_shell(self, platform: str | None = None) -> str:
        platform = platform or sys.platform
        if platform == "win32":
            candidates = [
                "C:\\Program Files\\PowerShell\\7\\pwsh.exe",
                "C:\\Program Files (x86)\\PowerShell\\7\\pwsh.exe",
            ]
            local = self._environ.get("LOCALAPPDATA")
            if local:
                candidates.append(ntpath.join(local, "Microsoft", "WindowsApps", "pwsh.exe"))
            for candidate in candidates:
                if self._exists(candidate):
                    return candidate
            return "powershell.exe"

        login_shell = self._environ.get("SHELL")
        if login_shell:
            return login_shell
        fallbacks = ["/bin/bash", "/bin/sh"]
        if platform == "darwin":
            fallbacks.insert(0, "/bin/zsh")
        for candidate in fallbacks[:-1]:
            if self._exists(candidate):
                return candidate
        return fallbacks[-1]

    def find_agent(self, variant: str, platform: str | None = None) -> str:
        """Locate an agent executable, or return its bare name for PATH lookup."""
        platform = platform or sys.platform
        name = AGENT_BINARIES.get(variant, variant)
        join = _pathmod(platform).join

        if platform == "win32":
            names = [f"{name}.cmd", f"{name}.exe", name]
        else:
            names = [name]

        for directory in self.agent_search_dirs(name, platform):
            for candidate_name in names:
                candidate = join(directory, candidate_name)
                if self._exists(candidate):
                    logger.debug("Found %s at %s", name, candidate)
                    return candidate

        logger.warning(
            "Could not find %s in known install locations, relying on PATH", name
        )
        return names[0] if platform == "win32" else name

    def agent_search_dirs(self, name: str, platform: str | None = None) -> list[str]:
        """Ordered directories scanned for agent executables."""
        platform = platform or sys.platform
        join = _pathmod(platform).join
        home = self._home

        if platform == "win32":
            dirs = []
            appdata = self._environ.get("APPDATA")
            local = self._environ.get("LOCALAPPDATA")
            if appdata:
                dirs.append(join(appdata, "npm"))
            if local:
                dirs.append(join(local, "Programs", name))
            dirs.append(join(home, ".local", "bin"))
            if appdata:
                dirs.extend(self._version_dirs(join(appdata, "nvm"), (), join))
            return dirs

        dirs = [
            join(home, ".local", "bin"),
            join(home, ".claude", "local"),
            join(home, ".npm-global", "bin"),
            join(home, ".volta", "bin"),
            join(home, ".bun", "bin"),
            "/opt/homebrew/bin",
            "/usr/local/bin",
            "/usr/bin",
        ]
        dirs.extend(self._version_dirs(join(home, ".nvm", "versions", "node"), ("bin",), join))
        fnm_root = (
            join(home, "Library", "Application Support", "fnm", "node-versions")
            if platform == "darwin"
            else join(home, ".local", "share", "fnm", "node-versions")
        )
        dirs.extend(self._version_dirs(fnm_root, ("installation", "bin"), join))
        return dirs

    def build_env(self, platform: str | None = None) -> dict[str, str]:
        platform = platform or sys.platform
        login_env = self.login_environment(platform)

        env: dict[str, str] = {}
        env.update(login_env)
        env.update(self._environ)
        env.update(UTF8_ENV)
        env["TERM"] = self.term_name
        env["COLORTERM"] = "truecolor"
        env["PATH"] = self._augment_path(
            self._environ.get("PATH", ""), login_env.get("PATH", ""), platform
        )
        return env

    def login_environment(self, platform: str | None = None) -> dict[str, str]:
        """Cached snapshot of the login-shell environment; ``{}`` on failure."""
        platform = platform or sys.platform
        if self._login_env is None:
            self._login_env = self._snapshot_login_env(platform)
        return dict(self._login_env)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _snapshot_login_env(self, platform: str) -> dict[str, str]:
        if platform == "win32" or self.env_snapshot_timeout <= 0:
            return {}

        shell = self._environ.get("SHELL") or "/bin/sh"
        script = f"echo {_ENV_BEGIN}; env; echo {_ENV_END}"
        try:
            result = subprocess.run(
                [shell, "-ilc", script],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.env_snapshot_timeout,
                start_new_session=True,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "Login shell %s did not report its environment within %.1fs",
                shell,
                self.env_snapshot_timeout,
            )
            return {}
        except OSError as e:
            logger.warning("Could not run login shell %s: %s", shell, e)
            return {}

        if result.returncode != 0:
            logger.warning(
                "Login shell %s exited with code %d while reading environment",
                shell,
                result.returncode,
            )
            return {}

        env = parse_env_output(result.stdout.decode("utf-8", errors="replace"))
        logger.debug("Login shell environment: %d variables", len(env))
        return env

    def _augment_path(self, current: str, login: str, platform: str) -> str:
        sep = ";" if platform == "win32" else ":"
        entries: list[str] = []
        for part in current.split(sep) + login.split(sep):
            if part and part not in entries:
                entries.append(part)
        for extra in self._package_bin_dirs(platform):
            if extra not in entries and self._exists(extra):
                entries.append(extra)
        return sep.join(entries)

    def _package_bin_dirs(self, platform: str) -> list[str]:
        join = _pathmod(platform).join
        if platform == "win32":
            appdata = self._environ.get("APPDATA")
            return [join(appdata, "npm")] if appdata else []
        return [
            "/opt/homebrew/bin",
            "/usr/local/bin",
            "/home/linuxbrew/.linuxbrew/bin",
            join(self._home, ".local", "bin"),
            join(self._home, ".cargo", "bin"),
        ]

    def _version_dirs(
        self, root: str, suffix: tuple[str, ...], join: Callable[..., str]
    ) -> list[str]:
        """Per-version bin directories under ``root``, newest version first."""
        try:
            versions = [p.name for p in Path(root).iterdir() if p.is_dir()]
        except OSError:
            return []
        versions.sort(key=_version_key, reverse=True)
        return [join(root, v, *suffix) for v in versions]


def shell_path_for(
    preference: str, custom_path: str = "", platform: str | None = None
) -> str | None:
    """Map a shell preference to an override path.

    ``None`` means "let the resolver pick the platform default".
    """
    platform = platform or sys.platform
    if preference == "auto":
        return None

    if platform == "win32":
        if preference == "pwsh":
            for candidate in (
                "C:\\Program Files\\PowerShell\\7\\pwsh.exe",
                "C:\\Program Files (x86)\\PowerShell\\7\\pwsh.exe",
            ):
                if os.path.exists(candidate):
                    return candidate
            return "pwsh.exe"
        if preference == "powershell":
            return "powershell.exe"
        if preference == "cmd":
            return "cmd.exe"

    if preference in ("zsh", "bash"):
        return None
    if preference == "custom":
        return custom_path or None
    return preference
