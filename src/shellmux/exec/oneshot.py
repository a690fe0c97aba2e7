"""One-shot command execution outside the shared terminal session.

Used for commands whose output should not go through the interactive
shell: each call gets its own ``<shell> -lc`` process with stdout and
stderr kept apart.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from shellmux.config import TerminalConfig
from shellmux.errors import ExecTimeoutError, SessionSpawnError
from shellmux.exec.queue import DEFAULT_TIMEOUT
from shellmux.exec.result import ExecResult
from shellmux.pty.shell import build_base_env, resolve_shell_path

logger = logging.getLogger(__name__)


async def run_shell_command(
    command: str,
    config: TerminalConfig | None = None,
    shell: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> ExecResult:
    """Run ``command`` through a login shell and collect its output.

    Never raises for command failures: spawn errors, timeouts, and non-zero
    exits all come back as an unsuccessful ``ExecResult``.
    """
    config = config or TerminalConfig()
    shell_path = resolve_shell_path(shell, config)

    try:
        process = await asyncio.create_subprocess_exec(
            shell_path,
            "-lc",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            env=build_base_env(config),
        )
    except OSError as e:
        return ExecResult.failed(SessionSpawnError(shell_path, str(e)))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        await process.wait()
        failure = ExecTimeoutError(timeout)
        logger.warning("One-shot command timed out: %s", command[:80])
        return ExecResult(success=False, error=str(failure), failure=failure)

    out = stdout.decode("utf-8", errors="replace") if stdout else ""
    err = stderr.decode("utf-8", errors="replace") if stderr else ""
    code = process.returncode if process.returncode is not None else -1
    result = ExecResult.completed(code, out)
    result.stderr = err
    return result
