"""Configuration: Pydantic models for termdeck settings."""

from __future__ import annotations

import json
import os
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field, model_validator

ShellPreference = Literal["auto", "pwsh", "powershell", "cmd", "zsh", "bash", "custom"]


class BufferConfig(BaseModel):
    """Output buffer thresholds, in characters."""

    high_water: int = Field(default=200_000, gt=0)
    low_water: int = Field(default=160_000, gt=0)

    @model_validator(mode="after")
    def _check_order(self) -> BufferConfig:
        if self.low_water > self.high_water:
            raise ValueError("low_water must not exceed high_water")
        return self


class TerminalConfig(BaseModel):
    """Process and terminal settings."""

    cols: int = Field(default=120, gt=0)
    rows: int = Field(default=30, gt=0)
    term_name: str = Field(default="xterm-256color")
    env_snapshot_timeout: float = Field(
        default=5.0,
        description=(
            "Seconds to wait for the login shell to report its environment. "
            "0 disables the snapshot."
        ),
    )
    shell: ShellPreference = Field(default="auto")
    custom_shell_path: str = Field(
        default="", description="Shell used when shell is 'custom'"
    )
    agent_variant: str = Field(
        default="claude", description="Agent CLI run by agent sessions ('claude' or 'happy')"
    )
    native_enabled: bool = Field(
        default=True, description="Allow the native PTY backend; False forces pipes"
    )
    max_sessions: int = Field(
        default=64, gt=0, description="Most live sessions; create fails beyond this"
    )


class TermdeckConfig(BaseModel):
    """Top-level termdeck configuration."""

    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> TermdeckConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMDECK_SHELL            - Shell preference, or a path to use as custom shell
            TERMDECK_AGENT            - Agent variant (claude/happy)
            TERMDECK_ENV_TIMEOUT      - Login-shell environment snapshot timeout (seconds)
            TERMDECK_BUFFER_HIGH      - Output buffer high-water mark
            TERMDECK_BUFFER_LOW       - Output buffer low-water mark
            TERMDECK_DISABLE_NATIVE   - Any non-empty value forces the piped backend
            TERMDECK_MAX_SESSIONS     - Most live sessions
        """
        try:
            from dotenv import load_dotenv

            load_dotenv()
        except ImportError:
            pass

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        terminal = config_data.setdefault("terminal", {})
        buffer = config_data.setdefault("buffer", {})

        env_shell = os.environ.get("TERMDECK_SHELL")
        if env_shell:
            if env_shell in get_args(ShellPreference):
                terminal["shell"] = env_shell
            else:
                terminal["shell"] = "custom"
                terminal["custom_shell_path"] = env_shell

        env_agent = os.environ.get("TERMDECK_AGENT")
        if env_agent:
            terminal["agent_variant"] = env_agent.lower()

        env_timeout = os.environ.get("TERMDECK_ENV_TIMEOUT")
        if env_timeout:
            terminal["env_snapshot_timeout"] = float(env_timeout)

        if os.environ.get("TERMDECK_DISABLE_NATIVE"):
            terminal["native_enabled"] = False

        env_max = os.environ.get("TERMDECK_MAX_SESSIONS")
        if env_max:
            terminal["max_sessions"] = int(env_max)

        env_high = os.environ.get("TERMDECK_BUFFER_HIGH")
        if env_high:
            buffer["high_water"] = int(env_high)

        env_low = os.environ.get("TERMDECK_BUFFER_LOW")
        if env_low:
            buffer["low_water"] = int(env_low)

        return cls.model_validate(config_data)
