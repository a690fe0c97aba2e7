"""Exec request queue — one command at a time against a shared shell."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Protocol

from shellmux.errors import (
    ExecTimeoutError,
    SessionSpawnError,
    ShellmuxError,
    WriteError,
)
from shellmux.exec.protocol import DecodeStep, ExecDecoder, Markers, build_exec_wrapper
from shellmux.exec.result import ExecResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20 * 60

DecoderFactory = Callable[[Markers, str], ExecDecoder]


class ExecTransport(Protocol):
    """What the queue needs from whoever owns the session."""

    async def ensure_session(self) -> int:
        """Return a live session id, creating a session if needed.

        Raises ``SessionSpawnError`` when no session can be created.
        """
        ...

    async def write(self, session_id: int, data: str) -> bool: ...


class RequestIdSource:
    """Request ids that never repeat within a process.

    A monotonic counter keeps them unique; the start timestamp keeps them
    from matching sentinels printed by an earlier process into the same
    scrollback.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._epoch = format(time.time_ns(), "x")

    def next(self) -> str:
        return f"{next(self._counter)}_{self._epoch}"


@dataclass(frozen=True)
class ExecRequest:
    request_id: str
    command: str


@dataclass
class ActiveExec:
    request: ExecRequest
    session_id: int
    decoder: ExecDecoder

    @property
    def request_id(self) -> str:
        return self.request.request_id


class ExecQueue:
    """Serialises "run this command" requests against one session.

    Requests are dispatched in enqueue order and at most one is in flight:
    a shell has no notion of concurrent commands. Results are routed back
    to the caller by request id. Callers that give up (timeout or
    cancellation) do not stop the command; the shell already has it.
    """

    def __init__(
        self,
        transport: ExecTransport,
        decoder_factory: DecoderFactory,
        timeout: float = DEFAULT_TIMEOUT,
        ids: RequestIdSource | None = None,
        on_result: Callable[[str, ExecResult], None] | None = None,
    ) -> None:
        self._transport = transport
        self._decoder_factory = decoder_factory
        self._timeout = timeout
        self._ids = ids or RequestIdSource()
        self._on_result = on_result
        self._pending: deque[ExecRequest] = deque()
        self._waiters: dict[str, asyncio.Future[ExecResult]] = {}
        self._active: ActiveExec | None = None
        self._dispatching = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> ActiveExec | None:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def enqueue(self, command: str, timeout: float | None = None) -> ExecResult:
        """Run ``command`` in the shared shell and wait for its result."""
        request = ExecRequest(request_id=self._ids.next(), command=command)
        future: asyncio.Future[ExecResult] = asyncio.get_running_loop().create_future()
        self._waiters[request.request_id] = future
        self._pending.append(request)
        logger.debug("Queued exec %s (%d pending)", request.request_id, len(self._pending))
        self._kick()

        limit = self._timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Exec %s timed out after %ss", request.request_id, limit)
            self._waiters.pop(request.request_id, None)
            return ExecResult.failed(ExecTimeoutError(limit))

    def _kick(self) -> None:
        if self._dispatching or self._active is not None or not self._pending:
            return
        task = asyncio.create_task(self._dispatch())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self) -> None:
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._active is None and self._pending:
                try:
                    session_id = await self._transport.ensure_session()
                except ShellmuxError as e:
                    self.fail_all(e)
                    return
                except Exception as e:
                    logger.exception("Could not obtain a session for queued execs")
                    self.fail_all(SessionSpawnError("", str(e)))
                    return
                if self._active is not None or not self._pending:
                    break

                request = self._pending.popleft()
                markers = Markers.for_request(request.request_id)
                active = ActiveExec(
                    request=request,
                    session_id=session_id,
                    decoder=self._decoder_factory(markers, request.command),
                )
                self._active = active
                logger.debug("Dispatching exec %s to session %s", request.request_id, session_id)

                ok = await self._transport.write(
                    session_id, build_exec_wrapper(request.command, markers)
                )
                if not ok and self._active is active:
                    self._active = None
                    self._resolve(request.request_id, ExecResult.failed(WriteError()))
        finally:
            self._dispatching = False

    def feed(self, session_id: int, chunk: str) -> DecodeStep | None:
        """Route session output through the in-flight request's decoder.

        Returns ``None`` when no request is in flight on that session.
        """
        active = self._active
        if active is None or active.session_id != session_id:
            return None
        step = active.decoder.feed(chunk)
        if step.result is not None:
            self._active = None
            self._resolve(active.request_id, step.result)
            self._kick()
        return step

    def fail_all(self, error: ShellmuxError) -> None:
        """Fail the in-flight request and everything queued behind it."""
        if isinstance(error, SessionSpawnError):
            logger.warning("Failing queued execs: %s", error)
        active, self._active = self._active, None
        if active is not None:
            self._resolve(
                active.request_id, ExecResult.failed(error, stdout=active.decoder.captured)
            )
        while self._pending:
            request = self._pending.popleft()
            self._resolve(request.request_id, ExecResult.failed(error))

    def fail_active(self, error: ShellmuxError) -> None:
        """Fail only the in-flight request; queued ones stay queued."""
        active, self._active = self._active, None
        if active is not None:
            self._resolve(
                active.request_id, ExecResult.failed(error, stdout=active.decoder.captured)
            )
        self._kick()

    def _resolve(self, request_id: str, result: ExecResult) -> None:
        if self._on_result is not None:
            try:
                self._on_result(request_id, result)
            except Exception:
                logger.exception("Error in on_result callback for %s", request_id)
        future = self._waiters.pop(request_id, None)
        if future is None or future.done():
            return
        future.set_result(result)
