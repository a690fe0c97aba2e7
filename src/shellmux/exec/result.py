"""Result of one command run through the exec protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from shellmux.errors import NonZeroExitError, ShellmuxError


@dataclass
class ExecResult:
    """Outcome of an exec request.

    ``stderr`` is always empty for commands that ran: the PTY merges both
    streams, so everything the command printed is in ``stdout``.
    ``failure`` keeps the exception behind an unsuccessful result.
    """

    success: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    failure: ShellmuxError | None = field(default=None, repr=False, compare=False)

    @classmethod
    def completed(cls, exit_code: int, stdout: str) -> ExecResult:
        if exit_code == 0:
            return cls(success=True, exit_code=0, stdout=stdout)
        failure = NonZeroExitError(exit_code)
        return cls(
            success=False,
            exit_code=exit_code,
            stdout=stdout,
            error=str(failure),
            failure=failure,
        )

    @classmethod
    def failed(cls, failure: ShellmuxError, stdout: str = "") -> ExecResult:
        return cls(success=False, stdout=stdout, error=str(failure), failure=failure)

    def raise_for_status(self) -> None:
        """Raise the failure behind this result, if any."""
        if self.success:
            return
        if self.failure is not None:
            raise self.failure
        raise NonZeroExitError(self.exit_code if self.exit_code is not None else -1)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }
        if self.error is not None:
            data["error"] = self.error
        return data
