"""PTY session — one interactive shell bound to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Callable

from shellmux.errors import SessionSpawnError, WriteError

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    PENDING = "pending"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us
    EXITED = "exited"  # Process exited on its own


def set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _make_controlling_tty() -> None:
    # Runs in the child between fork and exec: new session, and the PTY
    # slave (already dup'ed onto stdin) becomes its controlling terminal.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


@dataclass
class PTYSession:
    """A shell process attached to a pseudo-terminal.

    Output is read on a background task and handed to ``on_data`` as text
    decoded incrementally, so multi-byte characters split across reads are
    never mangled. Reading can be paused without touching the process: the
    kernel buffer fills up and the shell blocks on its next write, which is
    what gives the display side real back-pressure.

    ``on_exit`` fires exactly once, and only when the process dies on its
    own. ``kill()`` never reports an exit.
    """

    id: int
    shell_path: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str = field(default_factory=lambda: os.environ.get("HOME") or os.getcwd())
    cols: int = 120
    rows: int = 30

    on_data: Callable[[PTYSession, str], None] | None = None
    on_exit: Callable[[PTYSession, int | None], None] | None = None

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _status: PTYStatus = field(default=PTYStatus.PENDING, init=False)
    _flowing: asyncio.Event | None = field(default=None, init=False)
    _write_lock: asyncio.Lock | None = field(default=None, init=False)
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        init=False,
    )

    async def start(self) -> None:
        """Spawn the shell in a new PTY with its own session."""
        master_fd = slave_fd = -1
        try:
            master_fd, slave_fd = pty.openpty()
            set_winsize(slave_fd, self.rows, self.cols)
            self._proc = subprocess.Popen(
                [self.shell_path, *self.args],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                preexec_fn=_make_controlling_tty,
                env=self.env or None,
                cwd=self.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            if master_fd >= 0:
                os.close(master_fd)
            raise SessionSpawnError(self.shell_path, str(e)) from e
        finally:
            # Parent always closes slave fd
            if slave_fd >= 0:
                os.close(slave_fd)

        self._master_fd = master_fd
        try:
            self._pgid = os.getpgid(self._proc.pid)
        except ProcessLookupError:
            self._pgid = self._proc.pid
        self._status = PTYStatus.RUNNING
        self._flowing = asyncio.Event()
        self._flowing.set()
        self._write_lock = asyncio.Lock()
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY session %s started: pid=%d shell=%s %s",
            self.id,
            self._proc.pid,
            self.shell_path,
            " ".join(self.args),
        )

    async def _read_loop(self) -> None:
        """Continuously read output from the PTY master fd."""
        loop = asyncio.get_running_loop()
        try:
            while self._status == PTYStatus.RUNNING:
                assert self._flowing is not None
                await self._flowing.wait()
                if self._status != PTYStatus.RUNNING:
                    break
                try:
                    data = await loop.run_in_executor(
                        None, os.read, self._master_fd, READ_SIZE
                    )
                except OSError:
                    # EIO once the last slave fd is closed
                    break
                if not data:
                    break

                text = self._decoder.decode(data)
                if text and self.on_data and self._status == PTYStatus.RUNNING:
                    try:
                        self.on_data(self, text)
                    except Exception:
                        logger.exception("Error in on_data callback for session %s", self.id)
        finally:
            if self._status == PTYStatus.RUNNING:
                exit_code = await loop.run_in_executor(None, self._reap)
                self._status = PTYStatus.EXITED
                self._close_fd()
                logger.info("PTY session %s exited (code=%s)", self.id, exit_code)
                if self.on_exit:
                    try:
                        self.on_exit(self, exit_code)
                    except Exception:
                        logger.exception("Error in on_exit callback for session %s", self.id)

    def _reap(self) -> int | None:
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            return self._proc.poll()

    async def write(self, data: str | bytes) -> None:
        """Send raw input to the shell.

        Writes are serialised so concurrent callers never interleave inside
        one payload. The blocking ``os.write`` runs off the event loop since a
        shell that stops reading fills the PTY input buffer.
        """
        if self._status != PTYStatus.RUNNING or self._write_lock is None:
            raise WriteError(f"PTY session {self.id} is not running")

        payload = data.encode("utf-8") if isinstance(data, str) else data
        loop = asyncio.get_running_loop()
        async with self._write_lock:
            view = memoryview(payload)
            while view:
                try:
                    written = await loop.run_in_executor(
                        None, os.write, self._master_fd, view
                    )
                except OSError as e:
                    raise WriteError(f"Failed to write to PTY session {self.id}: {e}") from e
                view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        """Propagate new dimensions; the kernel signals SIGWINCH to the shell."""
        if not self.alive:
            return
        set_winsize(self._master_fd, rows, cols)
        self.cols, self.rows = cols, rows

    def pause(self) -> None:
        """Stop reading output. No-op when already paused."""
        if self._flowing is not None and self._flowing.is_set():
            self._flowing.clear()
            logger.debug("PTY session %s paused", self.id)

    def resume(self) -> None:
        """Resume reading output. No-op when not paused."""
        if self._flowing is not None and not self._flowing.is_set():
            self._flowing.set()
            logger.debug("PTY session %s resumed", self.id)

    @property
    def paused(self) -> bool:
        return self._flowing is not None and not self._flowing.is_set()

    def kill(self) -> None:
        """Kill the shell's whole process group and release the PTY."""
        if self._status not in (PTYStatus.RUNNING, PTYStatus.KILLING):
            return

        self._status = PTYStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY session %s: %s", self.id, e)

        # Wait for process to be reaped (avoids zombies)
        if self._proc is not None:
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("PTY session %s did not exit after SIGKILL", self.id)

        self._close_fd()
        self._status = PTYStatus.KILLED
        # Unblock a reader parked on the flow gate so the task can finish.
        if self._flowing is not None:
            self._flowing.set()

    def _close_fd(self) -> None:
        if self._master_fd < 0:
            return
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    @property
    def alive(self) -> bool:
        return self._status == PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def __del__(self) -> None:
        """Ensure cleanup on garbage collection."""
        if self._status in (PTYStatus.RUNNING, PTYStatus.KILLING):
            self.kill()
