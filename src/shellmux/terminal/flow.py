"""Flow control — back-pressure between the shell and the display."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

HIGH_WATERMARK = 512 * 1024
LOW_WATERMARK = 128 * 1024


class DisplaySink(Protocol):
    """Renders terminal output. ``write`` returns once the chunk is drawn."""

    async def write(self, chunk: str) -> None: ...


class FlowController:
    """Buffers display output and throttles the session with hysteresis.

    Chunks are written to the sink one at a time, each awaited before the
    next. When the bytes waiting reach ``high_watermark`` the session's
    reads are paused; they resume once a completed write leaves at most
    ``low_watermark`` bytes waiting.

    ``set_paused`` performs the actual pause/resume on the session and
    reports whether it took effect.
    """

    def __init__(
        self,
        sink: DisplaySink,
        set_paused: Callable[[bool], bool],
        high_watermark: int = HIGH_WATERMARK,
        low_watermark: int = LOW_WATERMARK,
    ) -> None:
        if low_watermark >= high_watermark:
            raise ValueError("low_watermark must be below high_watermark")
        self._sink = sink
        self._set_paused = set_paused
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self._chunks: deque[tuple[str, int]] = deque()
        self._pending_bytes = 0
        self._paused = False
        self._pump_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    def push(self, chunk: str) -> None:
        """Queue output for the display, pausing the session if needed."""
        if not chunk:
            return
        size = len(chunk.encode("utf-8", errors="replace"))
        self._chunks.append((chunk, size))
        self._pending_bytes += size
        if not self._paused and self._pending_bytes >= self.high_watermark:
            self._apply(True)
        self._idle.clear()
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            while self._chunks:
                chunk, size = self._chunks.popleft()
                self._pending_bytes = max(0, self._pending_bytes - size)
                try:
                    await self._sink.write(chunk)
                except Exception:
                    logger.exception("Display sink failed; dropping %d bytes", size)
                self._maybe_resume()
            self._maybe_resume()
        finally:
            if not self._chunks:
                self._idle.set()

    def _maybe_resume(self) -> None:
        if self._paused and self._pending_bytes <= self.low_watermark:
            self._apply(False)

    def _apply(self, paused: bool) -> None:
        if self._paused == paused:
            return
        if self._set_paused(paused):
            self._paused = paused
            logger.debug(
                "Output %s at %d pending bytes",
                "paused" if paused else "resumed",
                self._pending_bytes,
            )

    def reset_paused(self) -> None:
        """Forget the pause state without touching a session (it is gone)."""
        self._paused = False

    def clear(self) -> None:
        """Drop everything not yet written."""
        self._chunks.clear()
        self._pending_bytes = 0
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
        self._pump_task = None
        self._idle.set()

    async def drain(self) -> None:
        """Wait until every queued chunk has been written."""
        await self._idle.wait()
