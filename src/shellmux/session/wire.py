"""Wire protocol — the event stream a UI subscribes to.

Terminal output, session lifecycle changes, and exec results flow from the
terminal controller to any number of UI subscribers (a terminal widget, a
CLI printer). The core components never signal each other through it.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    OUTPUT = "output"
    SESSION_READY = "session_ready"
    SESSION_EXIT = "session_exit"
    EXEC_RESULT = "exec_result"
    NOTICE = "notice"
    ERROR = "error"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


# Events a subscriber may have waiting before output publishing blocks.
SUBSCRIBER_QUEUE_SIZE = 1024


class Wire:
    """Async message bus: terminal controller -> UI subscribers.

    Single-producer, multi-consumer broadcast. Subscriber queues are
    bounded: ``publish_output`` waits for room, which is how a slow UI
    holds back the shell. Lifecycle events never block the sender; on a
    full queue they are delivered once the subscriber catches up.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False
        self._deferred: set[asyncio.Task] = set()

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            self._put_nowait(q, event)

    async def publish_output(self, session_id: int | None, data: str) -> None:
        """Send an ``OUTPUT`` event, waiting until every subscriber has room."""
        if self._closed:
            return
        event = WireEvent(type=EventType.OUTPUT, data={"session_id": session_id, "data": data})
        for q in list(self._subscribers):
            if q in self._subscribers:
                await q.put(event)

    def _put_nowait(self, q: asyncio.Queue[WireEvent | None], event: WireEvent | None) -> None:
        if not q.full():
            q.put_nowait(event)
            return
        task = asyncio.get_running_loop().create_task(q.put(event))
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    def send_output(self, session_id: int | None, data: str) -> None:
        self.send(
            WireEvent(type=EventType.OUTPUT, data={"session_id": session_id, "data": data})
        )

    def send_session_ready(self, session_id: int, shell: str) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_READY,
                data={"session_id": session_id, "shell": shell},
            )
        )

    def send_session_exit(self, session_id: int, code: int | None) -> None:
        """Notify subscribers that a session's shell exited unexpectedly."""
        self.send(
            WireEvent(
                type=EventType.SESSION_EXIT,
                data={"session_id": session_id, "code": code},
            )
        )

    def send_exec_result(self, request_id: str, result: dict[str, Any]) -> None:
        self.send(
            WireEvent(
                type=EventType.EXEC_RESULT,
                data={"request_id": request_id, "result": result},
            )
        )

    def send_notice(self, message: str) -> None:
        self.send(WireEvent(type=EventType.NOTICE, data={"message": message}))

    def send_error(self, error: str) -> None:
        self.send(WireEvent(type=EventType.ERROR, data={"error": error}))

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from.

        ``maxsize=0`` gives an unbounded queue that never holds output back.
        """
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events.

        Anything still queued is discarded so a blocked publisher moves on.
        """
        if q in self._subscribers:
            self._subscribers.remove(q)
            while not q.empty():
                q.get_nowait()

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            self._put_nowait(q, None)
