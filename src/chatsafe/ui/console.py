"""Interactive console utilities for managing the running agent."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
import os
from typing import Any

from prompt_toolkit import print_formatted_text
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.shortcuts import PromptSession

from chatsafe.datatypes.moderation_datatypes import ClassifierMode, PipelineOutcome
from chatsafe.util.logger import get_logger

# Box drawing helpers for aligned console output
BOX_WIDTH = 45

def box_title(title: str) -> list[str]:
    inner_width = BOX_WIDTH - 2
    pad_left = (inner_width - len(title)) // 2
    pad_right = inner_width - len(title) - pad_left
    return [
        f"╔{'═' * inner_width}╗",
        f"║{' ' * pad_left}{title}{' ' * pad_right}║",
        f"╚{'═' * inner_width}╝"
    ]

logger = get_logger("console")

CommandHandler = Callable[["ConsoleControl", list[str]], Awaitable[None]]

DEFAULT_REPORT_COUNT = 10


@dataclass
class Command:
    """Definition of a console command."""
    name: str
    handler: CommandHandler
    aliases: list[str]
    description: str
    usage: str = ""

    def matches(self, input_cmd: str) -> bool:
        """Check if input matches this command or any alias."""
        return input_cmd == self.name or input_cmd in self.aliases


def console_print(message: str, style: str = "") -> None:
    """Render text via prompt_toolkit without breaking the active prompt."""
    formatted: FormattedText | str
    if style:
        formatted = FormattedText([(style, message)])
    else:
        formatted = message
    print_formatted_text(formatted)


@dataclass
class AgentHandles:
    """Live components the console reads from."""
    pipeline: Any = None
    classifier: Any = None
    ledger: Any = None
    database: Any = None
    stream: Any = None
    agent_address: str = ""


class ConsoleControl:
    """Console-driven lifecycle controls for the running agent."""

    def __init__(self) -> None:
        self.shutdown_event = asyncio.Event()
        self._handles = AgentHandles()

    def set_handles(self, handles: AgentHandles | None) -> None:
        self._handles = handles or AgentHandles()

    @property
    def handles(self) -> AgentHandles:
        return self._handles

    def request_shutdown(self) -> None:
        self.shutdown_event.set()

    def stop(self) -> None:
        self.shutdown_event.set()

    def is_shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()


# ==================== Command Handlers ====================

async def cmd_help(control: ConsoleControl, args: list[str]) -> None:
    """Display available commands and their descriptions."""
    for line in box_title("Console Commands Reference"):
        console_print(line, "ansigreen")

    for cmd in COMMANDS:
        aliases_str = f" (aliases: {', '.join(cmd.aliases)})" if cmd.aliases else ""
        console_print(f"\n  {cmd.name}{aliases_str}", "ansicyan")
        console_print(f"    {cmd.description}")
        if cmd.usage:
            console_print(f"    Usage: {cmd.usage}", "ansibrightblack")

    console_print("")


async def cmd_status(control: ConsoleControl, args: list[str]) -> None:
    """Display classifier mode, stream state and per-outcome counters."""
    handles = control.handles

    for line in box_title("Agent Status"):
        console_print(line, "ansiblue")

    console_print(f"  Agent:      {handles.agent_address or 'unknown'}")

    if handles.classifier is not None:
        if handles.classifier.mode is ClassifierMode.ACTIVE:
            console_print("  Classifier: 🟢 Active")
        else:
            console_print("  Classifier: 🔴 Degraded (messages pass unchecked)")

    if handles.stream is not None:
        connected = getattr(handles.stream, "connected", False)
        console_print(f"  Stream:     {'🟢 Connected' if connected else '🔴 Disconnected'}")

    pipeline = handles.pipeline
    if pipeline is None:
        console_print("  Pipeline:   🔴 Not initialized")
        console_print("")
        return

    stats = pipeline.stats
    console_print(f"  Checkpoint: {pipeline.checkpoint if pipeline.checkpoint is not None else 'none'}")
    console_print(f"  In flight:  {stats.in_flight} message(s), {pipeline.pending_ledger_submissions} ledger submission(s)")
    console_print(f"  Processed:  {stats.processed}")
    for outcome in PipelineOutcome:
        console_print(f"    {outcome.value:<24}{stats.outcomes.get(outcome, 0)}")
    console_print(f"    {'unchecked':<24}{stats.unchecked}")
    console_print(f"    {'duplicates_dropped':<24}{stats.duplicates_dropped}")
    console_print("")


async def cmd_reports(control: ConsoleControl, args: list[str]) -> None:
    """List the most recent infractions recorded on the ledger."""
    ledger = control.handles.ledger
    if ledger is None:
        console_print("Ledger not available.", "ansiyellow")
        return

    count = DEFAULT_REPORT_COUNT
    if args:
        try:
            count = max(1, int(args[0]))
        except ValueError:
            console_print(f"Invalid count '{args[0]}'.", "ansired")
            return

    records = await ledger.list_infractions()
    if not records:
        console_print("No infractions recorded on the ledger yet.", "ansiyellow")
        return

    for line in box_title(f"Ledger Reports ({len(records)} total)"):
        console_print(line, "ansiblue")
    # Newest first for display
    for record in reversed(records[-count:]):
        console_print(f"  • {record.detected_at:%Y-%m-%d %H:%M:%S} {record.subject}  {record.reason}")
    console_print("")


async def cmd_reputation(control: ConsoleControl, args: list[str]) -> None:
    """Show how many infractions the ledger holds for an address."""
    ledger = control.handles.ledger
    if ledger is None:
        console_print("Ledger not available.", "ansiyellow")
        return
    if not args:
        console_print("Usage: reputation <address>", "ansiyellow")
        return

    count = await ledger.reputation(args[0])
    console_print(f"  {args[0]}: {count} infraction(s) on record")


async def cmd_journal(control: ConsoleControl, args: list[str]) -> None:
    """List journal entries that are pending or failed."""
    database = control.handles.database
    if database is None:
        console_print("Journal not available.", "ansiyellow")
        return

    entries = await database.unresolved_entries()
    if not entries:
        console_print("No unresolved ledger submissions.", "ansigreen")
        return

    for line in box_title(f"Unresolved Submissions ({len(entries)})"):
        console_print(line, "ansiblue")
    for entry in entries:
        style = "ansiyellow" if entry.status == "pending" else "ansired"
        detail = entry.error or ""
        tx = f" tx={entry.transaction_ref}" if entry.transaction_ref else ""
        console_print(f"  • [{entry.status}] seq={entry.arrival_seq} {entry.subject} {entry.reason!r}{tx} {detail}", style)
    console_print("")


async def cmd_clear(control: ConsoleControl, args: list[str]) -> None:
    """Clear the console screen."""
    os.system('cls' if os.name == 'nt' else 'clear')
    console_print("Console cleared.", "ansigreen")


async def cmd_shutdown(control: ConsoleControl, args: list[str]) -> None:
    """Request graceful shutdown; in-flight work is drained first."""
    console_print("Shutdown requested. Draining in-flight work...", "ansiyellow")
    control.request_shutdown()


# ==================== Command Registry ====================

COMMANDS: list[Command] = [
    Command(
        name="help",
        handler=cmd_help,
        aliases=["h", "?"],
        description="Show this help message with all available commands",
    ),
    Command(
        name="status",
        handler=cmd_status,
        aliases=["stat", "info"],
        description="Display classifier mode, stream state and outcome counters",
    ),
    Command(
        name="reports",
        handler=cmd_reports,
        aliases=["ledger", "r"],
        description="List the most recent infractions recorded on the ledger",
        usage="reports [count]",
    ),
    Command(
        name="reputation",
        handler=cmd_reputation,
        aliases=["rep"],
        description="Show the number of recorded infractions for an address",
        usage="reputation <address>",
    ),
    Command(
        name="journal",
        handler=cmd_journal,
        aliases=["pending", "j"],
        description="List ledger submissions that are pending or failed",
    ),
    Command(
        name="clear",
        handler=cmd_clear,
        aliases=["cls"],
        description="Clear the console screen",
    ),
    Command(
        name="shutdown",
        handler=cmd_shutdown,
        aliases=["stop", "quit", "exit"],
        description="Gracefully shut down the agent",
    ),
]


# ==================== Command Dispatcher ====================

async def handle_console_command(command: str, control: ConsoleControl) -> None:
    """Interpret and execute a single console command line."""
    if not command.strip():
        return

    parts = command.strip().split()
    cmd_name = parts[0].lower()
    args = parts[1:]

    for cmd in COMMANDS:
        if cmd.matches(cmd_name):
            try:
                await cmd.handler(control, args)
            except Exception as exc:
                logger.exception("Error executing command '%s': %s", cmd_name, exc)
                console_print(f"Error executing command: {exc}", "ansired")
            return

    console_print(f"Unknown command '{cmd_name}'. Type 'help' for available commands.", "ansired")


async def run_console(control: ConsoleControl) -> None:
    """Run the interactive console until shutdown is requested."""
    session = PromptSession("> ")

    for line in box_title("ChatSafe Interactive Console"):
        console_print(line, "ansigreen")
    console_print("Type 'help' for available commands or 'exit' to quit.\n", "ansibrightblack")

    with patch_stdout():
        while not control.is_shutdown_requested():
            try:
                line = await session.prompt_async()
                if line.strip():
                    await handle_console_command(line, control)
            except (EOFError, KeyboardInterrupt):
                console_print("\nShutdown requested by user.", "ansiyellow")
                control.request_shutdown()
                break


@asynccontextmanager
async def console_session(control: ConsoleControl) -> AsyncIterator[ConsoleControl]:
    """Run the console alongside the agent, cleaning up automatically."""
    console_task = asyncio.create_task(run_console(control))
    try:
        yield control
    finally:
        console_task.cancel()
        try:
            await console_task
        except asyncio.CancelledError:
            pass
