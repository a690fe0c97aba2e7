"""PTY Manager — owns every terminal session, keyed by id."""

from __future__ import annotations

import base64
import binascii
import itertools
import logging
import math
from typing import Any, Protocol

from shellmux.config import TerminalConfig
from shellmux.errors import SessionSpawnError, ShellmuxError
from shellmux.pty.session import PTYSession
from shellmux.pty.shell import build_terminal_env, resolve_shell_path, shell_args

logger = logging.getLogger(__name__)


class SessionListener(Protocol):
    """Receives the raw output and exit events of a session."""

    def on_session_data(self, session_id: int, data: str) -> None: ...

    def on_session_exit(self, session_id: int, code: int | None) -> None: ...


class PTYManager:
    """Manages the lifecycle of terminal sessions.

    This is the only place sessions are created or destroyed. Everything
    else refers to a session by id and goes through these methods, which
    report a plain success flag instead of raising when the id is unknown.
    Sessions that exit on their own are dropped from tracking before the
    listener hears about it.
    """

    def __init__(
        self,
        config: TerminalConfig | None = None,
        listener: SessionListener | None = None,
    ) -> None:
        self._config = config or TerminalConfig()
        self._listener = listener
        self._sessions: dict[int, PTYSession] = {}
        self._listeners: dict[int, SessionListener] = {}
        self._ids = itertools.count(1)

    async def create_session(
        self, shell: str | None = None, listener: SessionListener | None = None
    ) -> int:
        """Spawn a shell bound to a new PTY and return its session id.

        ``listener`` receives this session's events instead of the
        manager-wide one.

        Raises:
            SessionSpawnError: The shell could not be started.
        """
        shell_path = resolve_shell_path(shell, self._config)
        session = PTYSession(
            id=next(self._ids),
            shell_path=shell_path,
            args=shell_args(shell_path, self._config),
            env=build_terminal_env(self._config),
            cols=self._config.cols,
            rows=self._config.rows,
            on_data=self._handle_data,
            on_exit=self._handle_exit,
        )
        if self._config.cwd:
            session.cwd = self._config.cwd

        try:
            await session.start()
        except SessionSpawnError:
            logger.warning("Failed to spawn %s", shell_path)
            raise

        self._sessions[session.id] = session
        listener = listener or self._listener
        if listener is not None:
            self._listeners[session.id] = listener
        return session.id

    def _handle_data(self, session: PTYSession, data: str) -> None:
        listener = self._listeners.get(session.id)
        if listener is not None and session.id in self._sessions:
            listener.on_session_data(session.id, data)

    def _handle_exit(self, session: PTYSession, code: int | None) -> None:
        listener = self._listeners.pop(session.id, None)
        if self._sessions.pop(session.id, None) is None:
            return
        if listener is not None:
            listener.on_session_exit(session.id, code)

    async def write(self, session_id: int, data: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        try:
            await session.write(data)
        except ShellmuxError as e:
            logger.debug("Write to session %s failed: %s", session_id, e)
            return False
        return True

    async def write_binary(self, session_id: int, data_base64: str) -> bool:
        """Write base64-encoded bytes that are not safe to send as text."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        try:
            data = base64.b64decode(data_base64, validate=True)
        except (binascii.Error, ValueError):
            return False
        if not data:
            return True
        try:
            await session.write(data)
        except ShellmuxError as e:
            logger.debug("Binary write to session %s failed: %s", session_id, e)
            return False
        return True

    def resize(self, session_id: int, cols: float, rows: float) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        safe_cols = (
            max(self._config.min_cols, math.floor(cols))
            if math.isfinite(cols)
            else self._config.cols
        )
        safe_rows = (
            max(self._config.min_rows, math.floor(rows))
            if math.isfinite(rows)
            else self._config.rows
        )
        try:
            session.resize(safe_cols, safe_rows)
        except OSError as e:
            logger.debug("Resize of session %s failed: %s", session_id, e)
            return False
        return True

    def set_flow_control(self, session_id: int, paused: bool) -> bool:
        """Pause or resume output delivery. Idempotent."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if paused:
            session.pause()
        else:
            session.resume()
        return True

    def close_session(self, session_id: int) -> bool:
        session = self._sessions.pop(session_id, None)
        self._listeners.pop(session_id, None)
        if session is None:
            return False
        session.kill()
        return True

    def list_sessions(self) -> list[dict[str, Any]]:
        return [
            {
                "id": s.id,
                "shell": s.shell_path,
                "pid": s.pid,
                "alive": s.alive,
                "paused": s.paused,
                "status": s.status.value,
            }
            for s in self._sessions.values()
        ]

    def cleanup(self) -> None:
        """Kill all sessions. Called on shutdown."""
        for session_id in list(self._sessions.keys()):
            self.close_session(session_id)
        logger.info("All PTY sessions cleaned up")

    def __len__(self) -> int:
        return len(self._sessions)
