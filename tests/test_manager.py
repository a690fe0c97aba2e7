"""Tests for shellmux.pty.manager (and PTYSession through it)."""

from __future__ import annotations

import asyncio
import base64
import os

import pytest

from shellmux.config import TerminalConfig
from shellmux.errors import SessionSpawnError, WriteError
from shellmux.pty.manager import PTYManager
from shellmux.pty.session import PTYStatus

needs_sh = pytest.mark.skipif(not os.access("/bin/sh", os.X_OK), reason="/bin/sh not available")


class FakeSession:
    def __init__(self, session_id: int = 7) -> None:
        self.id = session_id
        self.shell_path = "/bin/zsh"
        self.pid = 4242
        self.alive = True
        self.paused = False
        self.status = PTYStatus.RUNNING
        self.writes: list[str | bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.killed = False
        self.fail_writes = False

    async def write(self, data: str | bytes) -> None:
        if self.fail_writes:
            raise WriteError("PTY session 7 is not running")
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def kill(self) -> None:
        self.killed = True
        self.alive = False


class Collector:
    def __init__(self) -> None:
        self.data: list[str] = []
        self.exits: list[tuple[int, int | None]] = []
        self.exited = asyncio.Event()

    def on_session_data(self, session_id: int, data: str) -> None:
        self.data.append(data)

    def on_session_exit(self, session_id: int, code: int | None) -> None:
        self.exits.append((session_id, code))
        self.exited.set()

    @property
    def text(self) -> str:
        return "".join(self.data)

    async def wait_for(self, needle: str, timeout: float = 5.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while needle not in self.text:
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"{needle!r} not seen in {self.text!r}")
            await asyncio.sleep(0.02)


def with_fake(config: TerminalConfig | None = None) -> tuple[PTYManager, FakeSession, Collector]:
    manager = PTYManager(config)
    session = FakeSession()
    listener = Collector()
    manager._sessions[session.id] = session  # type: ignore[assignment]
    manager._listeners[session.id] = listener
    return manager, session, listener


def sh_config() -> TerminalConfig:
    return TerminalConfig(
        default_shell="/bin/sh",
        allowed_shells={"sh": "/bin/sh"},
        login_shells=[],
    )


# ---------------------------------------------------------------------------
# Unknown ids
# ---------------------------------------------------------------------------


class TestUnknownSession:
    async def test_operations_report_failure(self) -> None:
        manager = PTYManager()
        assert await manager.write(99, "x") is False
        assert await manager.write_binary(99, "eA==") is False
        assert manager.resize(99, 80, 24) is False
        assert manager.set_flow_control(99, True) is False
        assert manager.close_session(99) is False
        assert len(manager) == 0


# ---------------------------------------------------------------------------
# Operations against a tracked session
# ---------------------------------------------------------------------------


class TestManagerOperations:
    async def test_write(self) -> None:
        manager, session, _ = with_fake()
        assert await manager.write(7, "ls\r") is True
        assert session.writes == ["ls\r"]

    async def test_write_error_reported_as_false(self) -> None:
        manager, session, _ = with_fake()
        session.fail_writes = True
        assert await manager.write(7, "ls\r") is False

    async def test_write_binary(self) -> None:
        manager, session, _ = with_fake()
        payload = base64.b64encode(b"\x1b[200~\xff\x00").decode()
        assert await manager.write_binary(7, payload) is True
        assert session.writes == [b"\x1b[200~\xff\x00"]

    async def test_write_binary_invalid_base64(self) -> None:
        manager, session, _ = with_fake()
        assert await manager.write_binary(7, "not base64!") is False
        assert session.writes == []

    async def test_write_binary_empty(self) -> None:
        manager, session, _ = with_fake()
        assert await manager.write_binary(7, "") is True
        assert session.writes == []

    def test_resize_clamps_minimums(self) -> None:
        manager, session, _ = with_fake()
        assert manager.resize(7, 5, 2) is True
        assert session.sizes == [(20, 5)]

    def test_resize_floors_fractions(self) -> None:
        manager, session, _ = with_fake()
        manager.resize(7, 150.7, 40.2)
        assert session.sizes == [(150, 40)]

    def test_resize_non_finite_uses_defaults(self) -> None:
        manager, session, _ = with_fake()
        manager.resize(7, float("nan"), float("inf"))
        assert session.sizes == [(120, 30)]

    def test_set_flow_control(self) -> None:
        manager, session, _ = with_fake()
        assert manager.set_flow_control(7, True) is True
        assert session.paused is True
        assert manager.set_flow_control(7, True) is True
        assert manager.set_flow_control(7, False) is True
        assert session.paused is False

    def test_close_session(self) -> None:
        manager, session, listener = with_fake()
        assert manager.close_session(7) is True
        assert session.killed is True
        assert manager._sessions.get(7) is None
        assert listener.exits == []

    def test_list_sessions(self) -> None:
        manager, _, _ = with_fake()
        [info] = manager.list_sessions()
        assert info == {
            "id": 7,
            "shell": "/bin/zsh",
            "pid": 4242,
            "alive": True,
            "paused": False,
            "status": "running",
        }

    def test_cleanup(self) -> None:
        manager, session, _ = with_fake()
        manager.cleanup()
        assert session.killed is True
        assert len(manager) == 0


# ---------------------------------------------------------------------------
# Event routing
# ---------------------------------------------------------------------------


class TestEventRouting:
    def test_data_goes_to_session_listener(self) -> None:
        manager, session, listener = with_fake()
        manager._handle_data(session, "hello")  # type: ignore[arg-type]
        assert listener.data == ["hello"]

    def test_exit_untracks_before_notifying(self) -> None:
        manager, session, _ = with_fake()
        seen: list[int] = []

        class Checker(Collector):
            def on_session_exit(self, session_id: int, code: int | None) -> None:
                seen.append(len(manager))
                super().on_session_exit(session_id, code)

        checker = Checker()
        manager._listeners[7] = checker
        manager._handle_exit(session, 0)  # type: ignore[arg-type]
        assert checker.exits == [(7, 0)]
        assert seen == [0]

    def test_exit_after_close_not_reported(self) -> None:
        manager, session, listener = with_fake()
        manager.close_session(7)
        manager._handle_exit(session, -9)  # type: ignore[arg-type]
        assert listener.exits == []

    def test_data_after_close_dropped(self) -> None:
        manager, session, listener = with_fake()
        manager.close_session(7)
        manager._handle_data(session, "late")  # type: ignore[arg-type]
        assert listener.data == []


# ---------------------------------------------------------------------------
# Real shells
# ---------------------------------------------------------------------------


@needs_sh
class TestRealSession:
    async def test_spawn_write_exit(self) -> None:
        manager = PTYManager(sh_config())
        listener = Collector()
        session_id = await manager.create_session("sh", listener=listener)
        try:
            session = manager._sessions.get(session_id)
            assert session is not None
            assert session.alive
            assert session.shell_path == "/bin/sh"

            assert await manager.write(session_id, "echo shellmux-$((40+2))\n")
            await listener.wait_for("shellmux-42")

            assert await manager.write(session_id, "exit 3\n")
            await asyncio.wait_for(listener.exited.wait(), timeout=5)
            assert listener.exits == [(session_id, 3)]
            assert manager._sessions.get(session_id) is None
            assert session.status is PTYStatus.EXITED
        finally:
            manager.cleanup()

    async def test_pause_holds_output(self) -> None:
        manager = PTYManager(sh_config())
        listener = Collector()
        session_id = await manager.create_session("sh", listener=listener)
        try:
            await manager.write(session_id, "echo ready\n")
            await listener.wait_for("ready")
            assert manager.set_flow_control(session_id, True)
            # The read already in flight returns one more burst.
            await manager.write(session_id, "echo absorb\n")
            await listener.wait_for("absorb")
            await asyncio.sleep(0.2)
            seen = len(listener.text)
            await manager.write(session_id, "echo held-back\n")
            await asyncio.sleep(0.3)
            assert "held-back" not in listener.text[seen:]

            assert manager.set_flow_control(session_id, False)
            await listener.wait_for("held-back")
        finally:
            manager.cleanup()

    async def test_close_kills_without_exit_event(self) -> None:
        manager = PTYManager(sh_config())
        listener = Collector()
        session_id = await manager.create_session("sh", listener=listener)
        session = manager._sessions.get(session_id)
        assert session is not None
        assert manager.close_session(session_id) is True
        assert session.status is PTYStatus.KILLED
        await asyncio.sleep(0.1)
        assert listener.exits == []

    async def test_spawn_failure(self) -> None:
        config = TerminalConfig(
            default_shell="/nonexistent/shellmux-shell",
            allowed_shells={},
            login_shells=[],
        )
        manager = PTYManager(config)
        with pytest.raises(SessionSpawnError) as exc_info:
            await manager.create_session("zsh")
        assert "/nonexistent/shellmux-shell" in str(exc_info.value)
        assert len(manager) == 0


class TestSpawnErrors:
    async def test_pty_allocation_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def no_pty() -> tuple[int, int]:
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("shellmux.pty.session.pty.openpty", no_pty)
        manager = PTYManager(sh_config())
        with pytest.raises(SessionSpawnError) as exc_info:
            await manager.create_session("sh")
        assert str(exc_info.value) == (
            "Failed to start terminal session (/bin/sh): [Errno 28] No space left on device"
        )
        assert len(manager) == 0
