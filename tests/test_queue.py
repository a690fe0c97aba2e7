"""Tests for shellmux.exec.queue (FIFO dispatch over a fake session)."""

from __future__ import annotations

import asyncio
import re

from shellmux.config import BASH_PROMPT_PATTERNS
from shellmux.errors import (
    ExecTimeoutError,
    SessionExitedError,
    SessionSpawnError,
    WriteError,
)
from shellmux.exec.protocol import ExecDecoder, Markers, NoiseFilter
from shellmux.exec.queue import ExecQueue, RequestIdSource
from shellmux.exec.result import ExecResult

_BEGIN_RE = re.compile(r"'(__SHELLMUX_EXEC_BEGIN__(.+?)__)'")


class FakeTransport:
    """A session that records writes; the test plays the shell."""

    def __init__(
        self,
        spawn_error: bool = False,
        write_results: list[bool] | None = None,
        spawn_exception: Exception | None = None,
    ) -> None:
        self.session_id = 1
        self.spawn_error = spawn_error
        self.spawn_exception = spawn_exception
        self.spawn_calls = 0
        self.write_results = list(write_results or [])
        self.writes: list[tuple[int, str]] = []

    async def ensure_session(self) -> int:
        self.spawn_calls += 1
        if self.spawn_error:
            raise SessionSpawnError("/bin/nope", "No such file or directory")
        if self.spawn_exception is not None:
            raise self.spawn_exception
        return self.session_id

    async def write(self, session_id: int, data: str) -> bool:
        self.writes.append((session_id, data))
        return self.write_results.pop(0) if self.write_results else True


def make_decoder(markers: Markers, command: str) -> ExecDecoder:
    return ExecDecoder(
        markers=markers,
        noise=NoiseFilter(markers, BASH_PROMPT_PATTERNS),
        command=command,
    )


def shell_reply(wrapper: str, output: str, code: int) -> str:
    """The shell's output for a written wrapper: begin, output, done."""
    m = _BEGIN_RE.search(wrapper)
    assert m is not None
    markers = Markers.for_request(m.group(2))
    return f"{markers.begin}\r\n{output}{markers.done}{code}__\r\n$ "


async def wait_for_writes(transport: FakeTransport, count: int) -> None:
    for _ in range(200):
        if len(transport.writes) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} writes, saw {len(transport.writes)}")


async def settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# RequestIdSource
# ---------------------------------------------------------------------------


class TestRequestIdSource:
    def test_ids_unique_and_ordered(self) -> None:
        ids = RequestIdSource()
        first, second = ids.next(), ids.next()
        assert first != second
        assert first.startswith("1_")
        assert second.startswith("2_")

    def test_each_source_counts_from_one(self) -> None:
        a = RequestIdSource().next()
        b = RequestIdSource().next()
        assert a.split("_")[0] == b.split("_")[0] == "1"


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestExecQueueDispatch:
    async def test_single_command(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        task = asyncio.create_task(queue.enqueue("echo hello"))
        await wait_for_writes(transport, 1)

        session_id, wrapper = transport.writes[0]
        assert session_id == 1
        assert "\necho hello\n" in wrapper
        assert queue.active is not None

        step = queue.feed(1, shell_reply(wrapper, "hello\r\n", 0))
        assert step is not None and step.result is not None
        result = await task
        assert result == ExecResult(success=True, exit_code=0, stdout="hello\n")
        assert queue.active is None

    async def test_fifo_and_single_active(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        tasks = [
            asyncio.create_task(queue.enqueue(f"echo {i}")) for i in range(3)
        ]
        await wait_for_writes(transport, 1)
        await settle()
        # Only the head is in flight; the rest wait.
        assert len(transport.writes) == 1
        assert queue.pending_count == 2

        for i in range(3):
            await wait_for_writes(transport, i + 1)
            _, wrapper = transport.writes[i]
            assert f"\necho {i}\n" in wrapper
            queue.feed(1, shell_reply(wrapper, f"out{i}\r\n", 0))

        results = await asyncio.gather(*tasks)
        assert [r.stdout for r in results] == ["out0\n", "out1\n", "out2\n"]

    async def test_second_result_excludes_first_output(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        first = asyncio.create_task(queue.enqueue("echo first"))
        second = asyncio.create_task(queue.enqueue("echo second"))

        await wait_for_writes(transport, 1)
        reply = shell_reply(transport.writes[0][1], "first\r\n", 0)
        # Late output from the first command lands after its done line.
        queue.feed(1, reply + "first again\r\n")
        await wait_for_writes(transport, 2)
        queue.feed(1, shell_reply(transport.writes[1][1], "second\r\n", 0))

        assert (await first).stdout == "first\n"
        assert "first" not in (await second).stdout

    async def test_nonzero_exit(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        task = asyncio.create_task(queue.enqueue("exit 7"))
        await wait_for_writes(transport, 1)
        queue.feed(1, shell_reply(transport.writes[0][1], "", 7))
        result = await task
        assert result.success is False
        assert result.exit_code == 7
        assert result.error == "Command exited with code 7."

    async def test_feed_other_session_ignored(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        task = asyncio.create_task(queue.enqueue("true"))
        await wait_for_writes(transport, 1)
        assert queue.feed(2, shell_reply(transport.writes[0][1], "", 0)) is None
        queue.feed(1, shell_reply(transport.writes[0][1], "", 0))
        assert (await task).success

    def test_feed_without_active_returns_none(self) -> None:
        queue = ExecQueue(FakeTransport(), make_decoder)
        assert queue.feed(1, "anything") is None

    async def test_on_result_callback(self) -> None:
        seen: list[tuple[str, ExecResult]] = []
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder, on_result=lambda rid, r: seen.append((rid, r)))
        task = asyncio.create_task(queue.enqueue("true"))
        await wait_for_writes(transport, 1)
        queue.feed(1, shell_reply(transport.writes[0][1], "", 0))
        result = await task
        assert len(seen) == 1
        assert seen[0][1] == result
        assert seen[0][0] in transport.writes[0][1]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestExecQueueFailures:
    async def test_write_failure_fails_request_and_continues(self) -> None:
        transport = FakeTransport(write_results=[False, True])
        queue = ExecQueue(transport, make_decoder)
        first = asyncio.create_task(queue.enqueue("echo a"))
        second = asyncio.create_task(queue.enqueue("echo b"))

        result = await first
        assert result.success is False
        assert isinstance(result.failure, WriteError)
        assert result.error == "Failed to write command to terminal session."

        await wait_for_writes(transport, 2)
        queue.feed(1, shell_reply(transport.writes[1][1], "b\r\n", 0))
        assert (await second).stdout == "b\n"

    async def test_spawn_failure_fails_everything(self) -> None:
        transport = FakeTransport(spawn_error=True)
        queue = ExecQueue(transport, make_decoder)
        results = await asyncio.gather(
            queue.enqueue("echo a"), queue.enqueue("echo b"), queue.enqueue("echo c")
        )
        for result in results:
            assert result.success is False
            assert isinstance(result.failure, SessionSpawnError)
            assert "Failed to start terminal session" in (result.error or "")
        assert transport.writes == []
        assert queue.pending_count == 0

    async def test_unexpected_session_error_fails_everything(self) -> None:
        transport = FakeTransport(spawn_exception=OSError(28, "No space left on device"))
        queue = ExecQueue(transport, make_decoder)
        results = await asyncio.gather(
            queue.enqueue("echo a", timeout=2), queue.enqueue("echo b", timeout=2)
        )
        for result in results:
            assert isinstance(result.failure, SessionSpawnError)
            assert result.error == (
                "Failed to start terminal session: [Errno 28] No space left on device"
            )
        assert transport.writes == []
        assert queue.pending_count == 0

    async def test_fail_all_resolves_active_and_queued(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        tasks = [asyncio.create_task(queue.enqueue(f"sleep {i}")) for i in range(4)]
        await wait_for_writes(transport, 1)
        await settle()

        queue.fail_all(SessionExitedError(1))
        results = await asyncio.gather(*tasks)
        assert len(results) == 4
        for result in results:
            assert result.success is False
            assert result.error == "Terminal session exited (1)."
        assert queue.active is None
        assert queue.pending_count == 0

    async def test_fail_all_keeps_partial_output(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        task = asyncio.create_task(queue.enqueue("build"))
        await wait_for_writes(transport, 1)
        m = _BEGIN_RE.search(transport.writes[0][1])
        assert m is not None
        queue.feed(1, f"{m.group(1)}\r\nstep 1\r\n")
        queue.fail_all(SessionExitedError(None))
        result = await task
        assert result.stdout == "step 1\n"
        assert result.error == "Terminal session exited (unknown)."

    async def test_fail_active_leaves_queue(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        first = asyncio.create_task(queue.enqueue("one"))
        second = asyncio.create_task(queue.enqueue("two"))
        await wait_for_writes(transport, 1)

        queue.fail_active(SessionExitedError(0))
        assert (await first).success is False
        await wait_for_writes(transport, 2)
        queue.feed(1, shell_reply(transport.writes[1][1], "2\r\n", 0))
        assert (await second).stdout == "2\n"

    async def test_timeout_resolves_only_that_caller(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        slow = asyncio.create_task(queue.enqueue("sleep 999", timeout=0.05))
        queued = asyncio.create_task(queue.enqueue("echo later"))

        result = await slow
        assert result.success is False
        assert isinstance(result.failure, ExecTimeoutError)
        assert result.error == "Command timed out after 0s"
        # The command still owns the shell until its done line shows up.
        assert queue.active is not None
        assert not queued.done()

        queue.feed(1, shell_reply(transport.writes[0][1], "", 0))
        await wait_for_writes(transport, 2)
        queue.feed(1, shell_reply(transport.writes[1][1], "later\r\n", 0))
        assert (await queued).stdout == "later\n"

    async def test_caller_cancellation_does_not_stop_dispatch(self) -> None:
        transport = FakeTransport()
        queue = ExecQueue(transport, make_decoder)
        task = asyncio.create_task(queue.enqueue("long"))
        await wait_for_writes(transport, 1)
        task.cancel()
        await settle()
        assert queue.active is not None
        queue.feed(1, shell_reply(transport.writes[0][1], "", 0))
        assert queue.active is None
