"""Shell selection and the environment handed to terminal sessions."""

from __future__ import annotations

import json
import logging
import os

from shellmux.config import TerminalConfig

logger = logging.getLogger(__name__)


def resolve_shell_path(raw_shell: str | None, config: TerminalConfig) -> str:
    """Map a requested shell onto the allow-list.

    Accepts a basename (``"bash"``) or an allowed absolute path. Anything
    unrecognised falls back to the configured default shell.
    """
    candidate = (raw_shell or "").strip()
    if not candidate:
        return config.default_shell

    basename = os.path.basename(candidate).lower()
    if basename in config.allowed_shells:
        return config.allowed_shells[basename]
    if candidate in config.allowed_shells.values():
        return candidate

    return config.default_shell


def shell_args(shell_path: str, config: TerminalConfig) -> list[str]:
    basename = os.path.basename(shell_path).lower()
    return ["-l"] if basename in config.login_shells else []


def build_base_env(
    config: TerminalConfig, base: dict[str, str] | None = None
) -> dict[str, str]:
    """Build the environment for non-interactive package-manager commands.

    Package-manager install locations are prepended to PATH so shells
    started from a desktop launcher still find them.
    """
    env = dict(os.environ if base is None else base)
    path_entries = [*config.path_prefix, env.get("PATH", "")]
    env["PATH"] = ":".join(entry for entry in path_entries if entry)
    env["TERM"] = env.get("TERM") or config.term_name
    env.update(config.extra_env)
    env["NONINTERACTIVE"] = "1"
    return env


def build_terminal_env(
    config: TerminalConfig, base: dict[str, str] | None = None
) -> dict[str, str]:
    """Like ``build_base_env`` but for a shell a human types into."""
    env = build_base_env(config, base)
    env.pop("NONINTERACTIVE", None)
    env["COLORTERM"] = env.get("COLORTERM") or "truecolor"
    return env


def load_remembered_shell(config: TerminalConfig) -> str | None:
    """Return the shell saved by ``remember_shell``, if any."""
    path = config.shell_state_file
    if not path or not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable shell state file %s: %s", path, e)
        return None
    shell = data.get("shell") if isinstance(data, dict) else None
    return shell if isinstance(shell, str) else None


def remember_shell(config: TerminalConfig, shell_path: str) -> None:
    """Save ``shell_path`` for the next start. No-op unless configured."""
    path = config.shell_state_file
    if not path:
        return
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump({"shell": shell_path}, f)
    except OSError as e:
        logger.warning("Could not save shell choice to %s: %s", path, e)
