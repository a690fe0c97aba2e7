"""Terminal controller — one shared shell, its display, and its exec queue.

The controller owns the lifecycle of a single interactive session: it
creates the session lazily, recreates it when the user presses Enter after
the shell exited, and tears it down on shell switch or dispose. Session
events arrive on an inbox and are handled one at a time by a single task,
so lifecycle changes and output processing never interleave.
"""

from __future__ import annotations

import asyncio
import base64
import enum
import logging
import re
from typing import Any

from shellmux.config import ShellmuxConfig
from shellmux.errors import SessionClosedError, SessionExitedError, SessionSpawnError
from shellmux.exec.oneshot import run_shell_command
from shellmux.exec.protocol import ExecDecoder, Markers, NoiseFilter
from shellmux.exec.queue import ExecQueue
from shellmux.exec.result import ExecResult
from shellmux.pty.manager import PTYManager
from shellmux.pty.shell import load_remembered_shell, remember_shell, resolve_shell_path
from shellmux.session.wire import Wire
from shellmux.terminal.display import WireSink
from shellmux.terminal.flow import DisplaySink, FlowController
from shellmux.terminal.prompt import PromptSuppressor
from shellmux.text import to_display_lines

logger = logging.getLogger(__name__)

DISPOSED_MESSAGE = "Terminal was disposed before command completion."


def exit_notice(code: int | None) -> str:
    shown = "unknown" if code is None else str(code)
    return f"\r\n[terminal exited ({shown})]\r\nPress Enter to restart shell session.\r\n"


class LifecycleState(enum.Enum):
    NO_SESSION = "no_session"
    CREATING = "creating"
    READY = "ready"
    EXITED = "exited"
    CLOSING = "closing"


class TerminalController:
    """Drives one interactive shell on behalf of a UI and of exec callers.

    The controller is both the manager's listener for its session and the
    transport for its exec queue. Output from the session is first offered
    to the in-flight exec (which hides its own wrapper and sentinels), then
    stripped of redrawn prompts, then handed to the flow controller on its
    way to the display.
    """

    def __init__(
        self,
        manager: PTYManager,
        config: ShellmuxConfig | None = None,
        shell: str | None = None,
        sink: DisplaySink | None = None,
        wire: Wire | None = None,
    ) -> None:
        self._manager = manager
        self._config = config or ShellmuxConfig()
        self.wire = wire or Wire()

        self._state = LifecycleState.NO_SESSION
        self._session_id: int | None = None
        self._creating: asyncio.Task[int] | None = None
        self._suppress_exit = False
        self._size: tuple[int, int] | None = None
        self._disposed = False

        self._shell_path = ""
        self._prompt_res: list[re.Pattern[str]] = []
        if shell is None:
            shell = load_remembered_shell(self._config.terminal)
        self._select_shell(shell)

        self._inbox: asyncio.Queue[tuple[str, int, Any]] = asyncio.Queue()
        self._inbox_task: asyncio.Task | None = None

        flow = self._config.flow
        self.flow = FlowController(
            sink or WireSink(self.wire, lambda: self._session_id),
            self._set_flow_paused,
            high_watermark=flow.high_watermark,
            low_watermark=flow.low_watermark,
        )
        self.queue = ExecQueue(
            self,
            self._make_decoder,
            timeout=self._config.exec.timeout,
            on_result=self._publish_result,
        )
        self._post_exec_prompt = PromptSuppressor(self._is_prompt)
        self._initial_prompt = PromptSuppressor(self._is_prompt, persistent=True)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def session_id(self) -> int | None:
        return self._session_id

    @property
    def shell_path(self) -> str:
        return self._shell_path

    def _select_shell(self, shell: str | None) -> None:
        self._shell_path = resolve_shell_path(shell, self._config.terminal)
        profile = self._config.exec.noise_profile_for(self._shell_path)
        self._prompt_res = [re.compile(p) for p in profile.prompt_patterns]

    def _is_prompt(self, text: str) -> bool:
        return any(r.search(text) for r in self._prompt_res)

    def _make_decoder(self, markers: Markers, command: str) -> ExecDecoder:
        profile = self._config.exec.noise_profile_for(self._shell_path)
        return ExecDecoder(
            markers=markers,
            noise=NoiseFilter(markers, profile.prompt_patterns),
            command=command,
            suppress_command_echo=self._config.exec.suppress_command_echo,
            max_partial_line=self._config.exec.max_partial_line,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> int:
        """Start the session now instead of on first use."""
        return await self.ensure_session()

    async def ensure_session(self) -> int:
        """Return the live session id, creating the session if needed.

        Concurrent callers share one creation attempt.

        Raises:
            SessionSpawnError: The shell could not be started.
        """
        if self._disposed:
            raise SessionClosedError(DISPOSED_MESSAGE)
        if self._session_id is not None:
            return self._session_id
        if self._creating is None:
            self._creating = asyncio.create_task(self._create_session())
        return await asyncio.shield(self._creating)

    async def _create_session(self) -> int:
        self._state = LifecycleState.CREATING
        self._ensure_inbox()
        try:
            session_id = await self._manager.create_session(self._shell_path, listener=self)
        except Exception as e:
            self._state = LifecycleState.NO_SESSION
            if isinstance(e, SessionSpawnError):
                error = e
            else:
                error = SessionSpawnError(self._shell_path, str(e))
            logger.error("%s", error)
            self.wire.send_error(str(error))
            self.flow.push(to_display_lines(str(error)))
            if error is e:
                raise
            raise error from e
        finally:
            self._creating = None

        self._session_id = session_id
        self._state = LifecycleState.READY
        self.flow.reset_paused()
        self._post_exec_prompt.disarm()
        self._initial_prompt.arm()
        if self._size is not None:
            self._manager.resize(session_id, *self._size)
        logger.info("Session %s ready (%s)", session_id, self._shell_path)
        self.wire.send_session_ready(session_id, self._shell_path)
        return session_id

    def _close_current(self, reason: SessionClosedError, fail_queued: bool) -> None:
        session_id = self._session_id
        if session_id is None:
            return
        self._state = LifecycleState.CLOSING
        self._suppress_exit = True
        try:
            if fail_queued:
                self.queue.fail_all(reason)
            else:
                self.queue.fail_active(reason)
            if self.flow.paused:
                self._manager.set_flow_control(session_id, False)
            self._manager.close_session(session_id)
        finally:
            self._session_id = None
            self.flow.reset_paused()
            self._suppress_exit = False
            self._state = LifecycleState.NO_SESSION
        logger.info("Session %s closed", session_id)

    async def close(self) -> None:
        """Kill the session. Outstanding execs fail; the next use recreates it."""
        self._close_current(SessionClosedError(), fail_queued=True)

    async def switch_shell(self, shell: str) -> int:
        """Replace the session with one running ``shell``.

        The in-flight exec, if any, fails; queued ones run on the new shell.
        """
        self._select_shell(shell)
        remember_shell(self._config.terminal, self._shell_path)
        self._close_current(SessionClosedError(), fail_queued=False)
        self.wire.send_notice(f"Switched to {self._shell_path}")
        return await self.ensure_session()

    async def dispose(self) -> None:
        """Release everything. The controller cannot be used afterwards."""
        if self._disposed:
            return
        self.queue.fail_all(SessionClosedError(DISPOSED_MESSAGE))
        self._close_current(SessionClosedError(DISPOSED_MESSAGE), fail_queued=True)
        self._disposed = True
        if self._creating is not None:
            self._creating.cancel()
            self._creating = None
        self.flow.clear()
        if self._inbox_task is not None:
            self._inbox_task.cancel()
            self._inbox_task = None

    # ------------------------------------------------------------------
    # Session events (SessionListener)
    # ------------------------------------------------------------------

    def on_session_data(self, session_id: int, data: str) -> None:
        self._inbox.put_nowait(("data", session_id, data))

    def on_session_exit(self, session_id: int, code: int | None) -> None:
        self._inbox.put_nowait(("exit", session_id, code))

    def _ensure_inbox(self) -> None:
        if self._inbox_task is None or self._inbox_task.done():
            self._inbox_task = asyncio.create_task(self._run_inbox())

    async def _run_inbox(self) -> None:
        while True:
            kind, session_id, payload = await self._inbox.get()
            try:
                if kind == "data":
                    self._handle_data(session_id, payload)
                else:
                    self._handle_exit(session_id, payload)
            except Exception:
                logger.exception("Error handling %s event for session %s", kind, session_id)
            finally:
                self._inbox.task_done()

    def _handle_data(self, session_id: int, data: str) -> None:
        if session_id != self._session_id:
            return

        output = data
        step = self.queue.feed(session_id, data)
        if step is not None:
            output = step.visible
            if step.result is not None:
                self._post_exec_prompt.arm()
                output += self._post_exec_prompt.filter(step.trailing)
        else:
            output = self._post_exec_prompt.filter(output)

        output = self._initial_prompt.filter(output)
        self.flow.push(output)

    def _handle_exit(self, session_id: int, code: int | None) -> None:
        if session_id != self._session_id:
            return
        self._session_id = None
        self.flow.reset_paused()
        if self._suppress_exit:
            self._suppress_exit = False
            return

        self._state = LifecycleState.EXITED
        logger.warning("Session %s exited with code %s", session_id, code)
        self.queue.fail_all(SessionExitedError(code))
        self.wire.send_session_exit(session_id, code)
        self.flow.push(exit_notice(code))

    async def settle(self) -> None:
        """Wait until every received session event has been displayed."""
        await self._inbox.join()
        await self.flow.drain()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def write(self, session_id: int, data: str) -> bool:
        return await self._manager.write(session_id, data)

    async def write_input(self, data: str) -> bool:
        """Forward keystrokes from the user.

        Enter with no live session starts a new one.
        """
        if data:
            self._initial_prompt.disarm()

        if self._session_id is None:
            if data != "\r" or self._disposed:
                return False
            self.flow.push("\r\n")
            try:
                await self.ensure_session()
            except SessionSpawnError:
                return False
            return True

        return await self._manager.write(self._session_id, data)

    async def write_binary(self, data: bytes) -> bool:
        if self._session_id is None:
            return False
        self._initial_prompt.disarm()
        encoded = base64.b64encode(data).decode("ascii")
        return await self._manager.write_binary(self._session_id, encoded)

    def resize(self, cols: int, rows: int) -> bool:
        self._size = (cols, rows)
        if self._session_id is None:
            return False
        return self._manager.resize(self._session_id, cols, rows)

    def _set_flow_paused(self, paused: bool) -> bool:
        if self._session_id is None:
            return False
        return self._manager.set_flow_control(self._session_id, paused)

    def set_flow_control(self, paused: bool) -> bool:
        """Pause or resume the session on behalf of an external display."""
        return self._set_flow_paused(paused)

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    async def exec(self, command: str, timeout: float | None = None) -> ExecResult:
        """Run ``command`` in the shared shell; output is also shown live."""
        if self._disposed:
            return ExecResult.failed(SessionClosedError(DISPOSED_MESSAGE))
        return await self.queue.enqueue(command, timeout=timeout)

    def _publish_result(self, request_id: str, result: ExecResult) -> None:
        self.wire.send_exec_result(request_id, result.to_dict())

    def append(self, message: str) -> None:
        """Write a line of text to the display, outside the shell."""
        if message:
            self.flow.push(to_display_lines(message))

    async def execute_with_echo(self, command: str) -> ExecResult:
        """Run ``command`` in a separate process and echo it to the display.

        The shared shell is not involved, so this works while an exec is in
        flight and leaves the shell's own state alone.
        """
        self.append(f"$ {command}")
        result = await run_shell_command(
            command,
            config=self._config.terminal,
            shell=self._shell_path,
            timeout=self._config.exec.timeout,
        )
        if result.stdout:
            self.append(result.stdout)
        if result.stderr:
            self.append(result.stderr)
        if not result.success:
            shown = "?" if result.exit_code is None else result.exit_code
            self.append(f"[exit {shown}] {result.error or 'Command failed'}")
        return result
