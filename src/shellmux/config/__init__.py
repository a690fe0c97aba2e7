"""Configuration — Pydantic models for shellmux settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

DEFAULT_SHELL = "/bin/zsh"

ZSH_PROMPT_PATTERNS = [r"^\s*%\s*$", r"^\s*~\s*'\s*$"]
BASH_PROMPT_PATTERNS = [r"^\s*[$#]\s*$"]


class NoiseProfile(BaseModel):
    """Shell-specific noise patterns.

    Echo behaviour differs between shells, so the prompt filler lines the
    exec protocol strips are kept per shell basename rather than hard-coded.
    Each pattern is matched against a whole line with ANSI sequences and the
    line ending removed.
    """

    prompt_patterns: list[str] = Field(default_factory=list)


def _default_noise_profiles() -> dict[str, NoiseProfile]:
    return {
        "zsh": NoiseProfile(prompt_patterns=list(ZSH_PROMPT_PATTERNS)),
        "bash": NoiseProfile(prompt_patterns=list(BASH_PROMPT_PATTERNS)),
        "default": NoiseProfile(
            prompt_patterns=ZSH_PROMPT_PATTERNS + BASH_PROMPT_PATTERNS
        ),
    }


class TerminalConfig(BaseModel):
    """Shell process and pseudo-terminal settings."""

    default_shell: str = Field(
        default_factory=lambda: os.environ.get("SHELL") or DEFAULT_SHELL,
        description="Shell used when the requested one is not allowed",
    )
    allowed_shells: dict[str, str] = Field(
        default_factory=lambda: {"zsh": "/bin/zsh", "bash": "/bin/bash"},
        description="Shell basename -> absolute path allow-list",
    )
    login_shells: list[str] = Field(
        default_factory=lambda: ["zsh", "bash", "fish"],
        description="Shell basenames started with -l",
    )
    cols: int = Field(default=120)
    rows: int = Field(default=30)
    min_cols: int = Field(default=20)
    min_rows: int = Field(default=5)
    term_name: str = Field(default="xterm-256color")
    cwd: str | None = Field(
        default=None, description="Working directory. Defaults to $HOME."
    )
    path_prefix: list[str] = Field(
        default_factory=lambda: [
            "/opt/homebrew/bin",
            "/usr/local/bin",
            "/usr/bin",
            "/bin",
            "/usr/sbin",
            "/sbin",
        ],
        description="Entries prepended to the inherited PATH",
    )
    extra_env: dict[str, str] = Field(
        default_factory=lambda: {"HOMEBREW_NO_ENV_HINTS": "1"}
    )
    shell_state_file: str | None = Field(
        default=None,
        description="JSON file remembering the shell picked with switch_shell. Off when unset.",
    )


class FlowConfig(BaseModel):
    """Output back-pressure watermarks (bytes of pending display output)."""

    high_watermark: int = Field(default=512 * 1024)
    low_watermark: int = Field(default=128 * 1024)

    @model_validator(mode="after")
    def _check_hysteresis(self) -> FlowConfig:
        if self.low_watermark >= self.high_watermark:
            raise ValueError("low_watermark must be strictly below high_watermark")
        return self


class ExecConfig(BaseModel):
    """Marker-protocol execution settings."""

    timeout: float = Field(
        default=20 * 60, description="Seconds before a caller gets a timeout result"
    )
    suppress_command_echo: bool = Field(
        default=True,
        description="Drop the shell's echo of the wrapped command's own lines",
    )
    max_partial_line: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Longest unterminated line held back before it is flushed",
    )
    noise_profiles: dict[str, NoiseProfile] = Field(
        default_factory=_default_noise_profiles
    )

    def noise_profile_for(self, shell_path: str) -> NoiseProfile:
        basename = os.path.basename(shell_path).lower()
        profile = self.noise_profiles.get(basename) or self.noise_profiles.get("default")
        return profile or NoiseProfile()


class ShellmuxConfig(BaseModel):
    """Top-level shellmux configuration."""

    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    flow: FlowConfig = Field(default_factory=FlowConfig)
    exec: ExecConfig = Field(default_factory=ExecConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> ShellmuxConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SHELLMUX_SHELL            - Default shell path
            SHELLMUX_EXEC_TIMEOUT     - Exec timeout in seconds
            SHELLMUX_HIGH_WATERMARK   - Pause output above this many pending bytes
            SHELLMUX_LOW_WATERMARK    - Resume output at or below this many bytes
            SHELLMUX_SHELL_STATE_FILE - Remember the switched-to shell in this file
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        terminal = config_data.get("terminal", {})
        env_shell = os.environ.get("SHELLMUX_SHELL")
        if env_shell:
            terminal["default_shell"] = env_shell
        env_state_file = os.environ.get("SHELLMUX_SHELL_STATE_FILE")
        if env_state_file:
            terminal["shell_state_file"] = env_state_file
        if terminal:
            config_data["terminal"] = terminal

        exec_cfg = config_data.get("exec", {})
        env_timeout = os.environ.get("SHELLMUX_EXEC_TIMEOUT")
        if env_timeout:
            exec_cfg["timeout"] = float(env_timeout)
        if exec_cfg:
            config_data["exec"] = exec_cfg

        flow = config_data.get("flow", {})
        env_high = os.environ.get("SHELLMUX_HIGH_WATERMARK")
        if env_high:
            flow["high_watermark"] = int(env_high)
        env_low = os.environ.get("SHELLMUX_LOW_WATERMARK")
        if env_low:
            flow["low_watermark"] = int(env_low)
        if flow:
            config_data["flow"] = flow

        return cls.model_validate(config_data)
