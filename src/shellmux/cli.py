"""CLI entry point for shellmux."""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import signal
import struct
import sys
import termios
import tty

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from shellmux.config import ShellmuxConfig
from shellmux.errors import ShellmuxError
from shellmux.exec.result import ExecResult
from shellmux.pty.manager import PTYManager
from shellmux.terminal.controller import TerminalController
from shellmux.terminal.display import FileDescriptorSink
from shellmux.text import sanitize_binary_output, strip_ansi

app = typer.Typer(
    name="shellmux",
    help="Share one interactive shell between a terminal and programmatic commands.",
    no_args_is_help=True,
)

console = Console()

# Ctrl-] leaves an attached session, as in telnet.
DETACH_KEY = "\x1d"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(config_file: str | None, timeout: float | None = None) -> ShellmuxConfig:
    config = ShellmuxConfig.load(config_file)
    if timeout is not None:
        config.exec.timeout = timeout
    return config


@app.command("exec")
def exec_commands(
    commands: list[str] = typer.Argument(help="Commands to run in the shared shell."),
    shell: str | None = typer.Option(
        None, "--shell", "-s", help="Shell to use (zsh, bash, or an allowed path)."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Seconds to wait for each command."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON."),
    live: bool = typer.Option(
        False, "--live", "-l", help="Stream the terminal display to stderr."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run commands concurrently through one shell session, in order."""
    setup_logging(verbose)
    config = _load_config(config_file, timeout)

    results = asyncio.run(_run_exec(commands, config, shell, live))

    if as_json:
        payload = [{"command": cmd, **result.to_dict()} for cmd, result in results]
        typer.echo(json.dumps(payload, indent=2))
    else:
        _print_results(results)

    if not all(result.success for _, result in results):
        raise typer.Exit(1)


async def _run_exec(
    commands: list[str], config: ShellmuxConfig, shell: str | None, live: bool
) -> list[tuple[str, ExecResult]]:
    manager = PTYManager(config.terminal)
    sink = FileDescriptorSink(sys.stderr.fileno()) if live else None
    controller = TerminalController(manager, config, shell=shell, sink=sink)
    try:
        results = await asyncio.gather(*(controller.exec(cmd) for cmd in commands))
        await controller.settle()
    finally:
        await controller.dispose()
        manager.cleanup()
    return list(zip(commands, results))


def _print_results(results: list[tuple[str, ExecResult]]) -> None:
    table = Table(show_lines=True)
    table.add_column("Command", style="bold")
    table.add_column("Exit", justify="right")
    table.add_column("Output")

    for command, result in results:
        code = "-" if result.exit_code is None else str(result.exit_code)
        style = "green" if result.success else "red"
        output = escape(sanitize_binary_output(strip_ansi(result.stdout)).rstrip("\n"))
        if result.error:
            error = f"[red]{escape(result.error)}[/red]"
            output = f"{output}\n{error}" if output else error
        table.add_row(escape(command), f"[{style}]{code}[/{style}]", output)

    console.print(table)


@app.command()
def attach(
    shell: str | None = typer.Option(
        None, "--shell", "-s", help="Shell to use (zsh, bash, or an allowed path)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Attach this terminal to a shell session. Ctrl-] detaches."""
    if not sys.stdin.isatty():
        typer.echo("Error: attach needs an interactive terminal.", err=True)
        raise typer.Exit(1)

    # Log lines would land in the middle of the raw-mode display.
    setup_logging(verbose)
    if not verbose:
        logging.getLogger().setLevel(logging.WARNING)

    config = _load_config(config_file)
    stdin_fd = sys.stdin.fileno()
    old_attrs = termios.tcgetattr(stdin_fd)
    tty.setraw(stdin_fd)
    try:
        asyncio.run(_run_attach(config, shell, stdin_fd, sys.stdout.fileno()))
    finally:
        termios.tcsetattr(stdin_fd, termios.TCSAFLUSH, old_attrs)
    typer.echo("\n[detached]")


def _winsize(fd: int) -> tuple[int, int]:
    """Return (cols, rows) for the given tty fd."""
    rows, cols, _, _ = struct.unpack("HHHH", fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\x00" * 8))
    return cols, rows


async def _run_attach(
    config: ShellmuxConfig, shell: str | None, stdin_fd: int, stdout_fd: int
) -> None:
    loop = asyncio.get_running_loop()
    manager = PTYManager(config.terminal)
    controller = TerminalController(
        manager, config, shell=shell, sink=FileDescriptorSink(stdout_fd)
    )
    detached = asyncio.Event()
    keystrokes: asyncio.Queue[str] = asyncio.Queue()

    def _on_stdin() -> None:
        try:
            data = os.read(stdin_fd, 1024)
        except OSError:
            data = b""
        text = data.decode("utf-8", errors="replace")
        if not text or DETACH_KEY in text:
            detached.set()
            return
        keystrokes.put_nowait(text)

    def _on_winch() -> None:
        try:
            controller.resize(*_winsize(stdin_fd))
        except OSError:
            pass

    async def _forward() -> None:
        while True:
            await controller.write_input(await keystrokes.get())

    try:
        controller.resize(*_winsize(stdin_fd))
        await controller.open()
    except ShellmuxError as e:
        await controller.dispose()
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    loop.add_reader(stdin_fd, _on_stdin)
    loop.add_signal_handler(signal.SIGWINCH, _on_winch)
    forward = asyncio.create_task(_forward())
    try:
        await detached.wait()
    finally:
        loop.remove_reader(stdin_fd)
        loop.remove_signal_handler(signal.SIGWINCH)
        forward.cancel()
        await controller.dispose()
        manager.cleanup()


@app.command()
def shells(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List the shells sessions may be started with."""
    config = ShellmuxConfig.load(config_file)
    table = Table()
    table.add_column("Name", style="bold")
    table.add_column("Path")
    table.add_column("Login")
    table.add_column("Available")

    terminal = config.terminal
    for name, path in terminal.allowed_shells.items():
        login = "yes" if name in terminal.login_shells else "no"
        available = "[green]yes[/green]" if os.access(path, os.X_OK) else "[red]no[/red]"
        table.add_row(name, path, login, available)

    console.print(table)
    typer.echo(f"Default: {terminal.default_shell}")


if __name__ == "__main__":
    app()
