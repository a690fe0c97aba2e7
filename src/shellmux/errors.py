"""Error taxonomy for terminal sessions and command execution."""

from __future__ import annotations


class ShellmuxError(Exception):
    """Base class for all shellmux failures."""


class SessionSpawnError(ShellmuxError):
    """The shell executable is missing or could not be started."""

    def __init__(self, shell: str, reason: str = "") -> None:
        self.shell = shell
        self.reason = reason
        message = "Failed to start terminal session"
        if shell:
            message += f" ({shell})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class WriteError(ShellmuxError):
    """No live session accepted the write."""

    def __init__(self, message: str = "Failed to write command to terminal session.") -> None:
        super().__init__(message)


class SessionExitedError(ShellmuxError):
    """The shell process died while requests were outstanding."""

    def __init__(self, code: int | None = None) -> None:
        self.code = code
        label = "unknown" if code is None else str(code)
        super().__init__(f"Terminal session exited ({label}).")


class ExecTimeoutError(ShellmuxError):
    """No done marker was observed within the timeout window."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Command timed out after {round(timeout)}s")


class NonZeroExitError(ShellmuxError):
    """The command completed but returned a non-zero status."""

    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(f"Command exited with code {exit_code}.")


class SessionClosedError(ShellmuxError):
    """The session was closed on purpose while a request was outstanding."""

    def __init__(self, message: str = "Terminal session was closed before command completion.") -> None:
        super().__init__(message)
