"""Display sinks — where filtered terminal output ends up."""

from __future__ import annotations

import asyncio
import os
from typing import Callable

from shellmux.session.wire import Wire


class WireSink:
    """Publishes display output as ``OUTPUT`` events.

    The write completes once every subscriber queue has taken the event, so
    a subscriber that falls behind stalls the flow controller.
    """

    def __init__(self, wire: Wire, session_id: Callable[[], int | None] = lambda: None) -> None:
        self._wire = wire
        self._session_id = session_id

    async def write(self, chunk: str) -> None:
        await self._wire.publish_output(self._session_id(), chunk)


class FileDescriptorSink:
    """Writes output to a file descriptor, typically the real terminal."""

    def __init__(self, fd: int) -> None:
        self._fd = fd

    async def write(self, chunk: str) -> None:
        data = chunk.encode("utf-8", errors="replace")
        loop = asyncio.get_running_loop()
        view = memoryview(data)
        while view:
            written = await loop.run_in_executor(None, os.write, self._fd, view)
            view = view[written:]
