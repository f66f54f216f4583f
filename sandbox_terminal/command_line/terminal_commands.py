"""Command line entry points for the terminal service.

Read-only introspection of the command policy and service status, plus a
one-shot ``run`` that executes a single command in a throwaway session and
streams its output to the console.
"""

import argparse
import asyncio
import logging
import shlex
import uuid
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from sandbox_terminal.terminal import SessionRegistry, TerminalConfig, TerminalError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_VERDICT_STYLES = {
    "allowed": "bold green",
    "requires_confirmation": "bold yellow",
    "blocked": "bold red",
    "not_allowlisted": "bold red",
    "invalid_format": "bold red",
}


def _join_command(parts: list[str]) -> str:
    # A single argument is already a full command line
    if len(parts) == 1:
        return parts[0]
    return shlex.join(parts)


def show_status(registry: SessionRegistry, console: Console) -> int:
    status = registry.get_status()
    status_text = f"""
# Terminal Service Status

**Sessions:** {status['sessions']} / {status['max_sessions']}
**Active Processes:** {status['active_processes']}

**Allowed Commands:** {status['allowed_commands']}
**Dangerous Commands:** {status['dangerous_commands']} (require confirmation)
**Blocked Commands:** {status['blocked_commands']}

**Default Timeout:** {status['default_timeout_ms']} ms
**Max Timeout:** {status['max_timeout_ms']} ms
**Idle Session Timeout:** {status['idle_timeout_ms']} ms
**Output History:** {status['max_output_entries']} entries per session
"""
    console.print(Markdown(status_text))
    return EXIT_OK


def show_command_list(title: str, commands: list[str], console: Console) -> int:
    table = Table(title=f"{title} ({len(commands)})", show_header=False)
    table.add_column("command", style="cyan")
    for command in sorted(commands):
        table.add_row(command)
    console.print(table)
    return EXIT_OK


def check_command(
    registry: SessionRegistry, command: str, confirmed: bool, console: Console
) -> int:
    result = registry.classifier.classify(command, safety_confirmed=confirmed)

    message = Text()
    message.append(f"{result.verdict.upper()}", style=_VERDICT_STYLES[result.verdict])
    message.append("  $ ", style="bold green")
    message.append(command, style="bold white")
    if result.reason:
        message.append(f"\n{result.reason}", style="dim")
    if result.requires_confirmation:
        message.append("\nRe-run with --confirm to accept the risk.", style="yellow")
    console.print(message)
    return EXIT_OK if result.allowed else EXIT_FAILED


async def run_command(
    registry: SessionRegistry,
    command: str,
    console: Console,
    confirmed: bool = False,
    timeout_ms: Optional[int] = None,
    cwd: Optional[str] = None,
) -> int:
    """Execute one command in a temporary session, streaming output."""
    session_id = f"cli_{uuid.uuid4().hex[:12]}"
    registry.create_session(session_id, "cli", name="CLI", working_directory=cwd)

    def stream(channel: str, chunk: str):
        console.print(
            Text(chunk.rstrip("\n"), style="red" if channel == "stderr" else ""),
            highlight=False,
        )

    console.print(Text(f"$ {command}", style="bold green"))
    try:
        result = await registry.execute_in_session(
            session_id,
            command,
            timeout_ms=timeout_ms,
            safety_confirmed=confirmed,
            on_output=stream,
        )
    except TerminalError as e:
        console.print(Text(e.message, style="bold red"))
        if e.requires_safety:
            console.print(Text("Re-run with --confirm to accept the risk.", style="yellow"))
        return EXIT_FAILED
    finally:
        registry.destroy_session(session_id)

    if result.timed_out:
        console.print(Text("Process killed: timeout reached", style="bold red"))
    elif not result.success:
        console.print(
            Text(f"Command failed with exit code {result.exit_code}", style="bold red")
        )
    console.print(Text(f"Took {result.duration_ms / 1000:.2f}s", style="dim"))
    return EXIT_OK if result.success else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sandbox-terminal",
        description="Policy-gated, session-based command execution",
    )
    parser.add_argument("--config-dir", type=Path, default=None)
    parser.add_argument("-v", "--verbose", action="store_true")

    subparsers = parser.add_subparsers(dest="subcommand", required=True)
    subparsers.add_parser("status", help="Show service status")
    subparsers.add_parser("allowed", help="List allowed commands")
    subparsers.add_parser("dangerous", help="List commands that need confirmation")
    subparsers.add_parser("blocked", help="List blocked commands")

    check = subparsers.add_parser("check", help="Classify a command without running it")
    check.add_argument("--confirm", action="store_true")
    check.add_argument("command", nargs=argparse.REMAINDER)

    run = subparsers.add_parser("run", help="Run a command in a one-shot session")
    run.add_argument("--confirm", action="store_true")
    run.add_argument("--timeout-ms", type=int, default=None)
    run.add_argument("--cwd", default=None)
    run.add_argument("command", nargs=argparse.REMAINDER)
    return parser


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )


async def _dispatch(args, config: TerminalConfig, console: Console) -> int:
    registry = SessionRegistry(config)
    async with registry:
        if args.subcommand == "status":
            return show_status(registry, console)
        if args.subcommand == "allowed":
            return show_command_list("Allowed commands", registry.get_allowed_commands(), console)
        if args.subcommand == "dangerous":
            return show_command_list(
                "Dangerous commands", registry.get_dangerous_commands(), console
            )
        if args.subcommand == "blocked":
            return show_command_list("Blocked commands", registry.get_blocked_commands(), console)

        command = _join_command(args.command)
        if args.subcommand == "check":
            return check_command(registry, command, args.confirm, console)
        return await run_command(
            registry,
            command,
            console,
            confirmed=args.confirm,
            timeout_ms=args.timeout_ms,
            cwd=args.cwd,
        )


def main(argv: Optional[list[str]] = None, console: Optional[Console] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    console = console or Console()

    if args.subcommand in ("check", "run") and not args.command:
        console.print(Text(f"Usage: sandbox-terminal {args.subcommand} <command>", style="red"))
        return EXIT_USAGE

    config = TerminalConfig(config_dir=args.config_dir)
    return asyncio.run(_dispatch(args, config, console))
