"""Command line entry points for the Claude Code hooks.

Each hook command reads the hook payload from stdin and returns the exit code
the host expects: 0 on success, 1 for a non-blocking failure, 2 to block.
"""

import logging
import sys
from pathlib import Path
from typing import Annotated, Callable, Optional

import cyclopts
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from subconscious.config import Settings, project_state_dir
from subconscious.errors import EXIT_NON_BLOCKING, SubconsciousError
from subconscious.hook_logging import log_file_for, setup_logging
from subconscious.hooks import prompt_sync, send_messages, session_start
from subconscious.hooks.input import HookInput, read_hook_input
from subconscious.sync.agent_config import GlobalConfigStore, needs_import
from subconscious.sync.delivery import run_handoff
from subconscious.sync.state import (
    ConversationStore,
    DeliveryLog,
    SessionStateStore,
)

logger = logging.getLogger(__name__)

app = cyclopts.App(
    name="subconscious", help="Sync Claude Code sessions with a Letta agent"
)


def _get_console() -> Console:
    """Console for diagnostics; stdout belongs to the host."""
    return Console(stderr=True)


def run_hook(name: str, handler: Callable[[HookInput, Settings], int]) -> int:
    """Run a hook handler, turning failures into host exit codes."""
    console = _get_console()

    try:
        settings = Settings.from_env()
    except SubconsciousError as e:
        console.print(f"[red]{e}[/red]")
        return e.exit_code

    setup_logging(name, settings)
    logger.info(f"{name} hook started")

    try:
        exit_code = handler(read_hook_input(), settings)
    except SubconsciousError as e:
        logger.error(f"{name} failed: {e}")
        console.print(f"[red]{name}: {e}[/red]")
        return e.exit_code
    except Exception as e:
        # Never take down the host session over an unexpected error
        logger.exception(f"{name} failed unexpectedly: {e}")
        console.print(f"[red]{name}: unexpected error: {e}[/red]")
        return EXIT_NON_BLOCKING

    logger.info(f"{name} hook finished with exit code {exit_code}")
    return exit_code


@app.command(name="session-start")
def session_start_command() -> int:
    """SessionStart hook: bind the session to a conversation."""
    return run_hook("session_start", session_start.run)


@app.command(name="prompt-sync")
def prompt_sync_command() -> int:
    """UserPromptSubmit hook: surface the agent's memory and messages."""
    return run_hook("sync_letta_memory", prompt_sync.run)


@app.command(name="tool-sync")
def tool_sync_command() -> int:
    """PreToolUse hook: surface memory changes between prompts."""
    return run_hook(
        "tool_sync",
        lambda hook_input, settings: prompt_sync.run(
            hook_input, settings, event_name="PreToolUse"
        ),
    )


@app.command(name="send")
def send_command(
    *,
    wait: Annotated[
        bool, cyclopts.Parameter(help="Deliver in the foreground instead of a worker")
    ] = False,
) -> int:
    """Stop hook: queue new transcript turns for delivery."""
    return run_hook(
        "send_messages",
        lambda hook_input, settings: send_messages.run(hook_input, settings, wait=wait),
    )


@app.command(name="deliver")
def deliver_command(
    handoff: Annotated[Path, cyclopts.Parameter(help="Handoff file written by the Stop hook")],
) -> int:
    """Background worker: deliver one handoff file."""
    try:
        settings = Settings.from_env()
    except SubconsciousError as e:
        _get_console().print(f"[red]{e}[/red]")
        return e.exit_code

    setup_logging("send_worker", settings)
    try:
        delivered = run_handoff(handoff, settings)
    except Exception as e:
        logger.exception(f"Delivery worker failed: {e}")
        return EXIT_NON_BLOCKING
    return 0 if delivered else EXIT_NON_BLOCKING


@app.command
def status(
    *,
    cwd: Annotated[
        Optional[Path], cyclopts.Parameter(help="Project directory to inspect")
    ] = None,
    session: Annotated[
        Optional[str], cyclopts.Parameter(help="Only show this session's deliveries")
    ] = None,
    limit: Annotated[int, cyclopts.Parameter(help="Deliveries to show")] = 10,
):
    """Show the agent binding, session cursors and recent deliveries.

    Example:
        subconscious status
        subconscious status --session 4f1c... --limit 20
    """
    console = Console()
    try:
        settings = Settings.from_env()
    except SubconsciousError as e:
        _get_console().print(f"[red]{e}[/red]")
        return e.exit_code

    project_dir = Path(cwd) if cwd else settings.project_dir or Path.cwd()
    state_dir = project_state_dir(project_dir)

    global_config = GlobalConfigStore(settings.global_config_file).read()
    agent_id = settings.agent_id or global_config.agent_id

    table = Table(title="Letta Sync Status", show_header=False, box=None)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("API key", "✓ Set" if settings.api_key else "✗ Missing")
    table.add_row("Base URL", settings.base_url)
    table.add_row(
        "Agent",
        agent_id or ("(will import on first use)" if needs_import(settings) else "-"),
    )
    if agent_id:
        table.add_row("Agent source", "LETTA_AGENT_ID" if settings.agent_id else "config")
    if global_config.model:
        table.add_row("Model", global_config.model)
    table.add_row("Mode", settings.mode.value)
    table.add_row("Target", settings.target.value)
    table.add_row("State dir", str(state_dir))
    table.add_row("Log dir", str(log_file_for("send_worker", settings).parent))
    console.print(table)

    conversations = ConversationStore(state_dir).load()
    if conversations:
        sessions = SessionStateStore(state_dir)
        session_table = Table(title="Sessions")
        session_table.add_column("Session", style="cyan")
        session_table.add_column("Conversation")
        session_table.add_column("Cursor", justify="right")
        session_table.add_column("Updated")
        for session_id, conversation_id in conversations.items():
            cursor = sessions.load_cursor(session_id)
            session_table.add_row(
                session_id,
                conversation_id,
                str(cursor.last_processed_index),
                cursor.updated_at or "-",
            )
        console.print(session_table)

    records = DeliveryLog(state_dir).recent(limit=limit, session_id=session)
    if not records:
        console.print("[dim]No deliveries recorded[/dim]")
        return

    log_table = Table(title="Recent Deliveries")
    log_table.add_column("Time")
    log_table.add_column("Session", style="cyan")
    log_table.add_column("Turns", justify="right")
    log_table.add_column("Indices")
    log_table.add_column("Status")
    for record in records:
        style = {"success": "green", "busy": "yellow"}.get(record.status, "red")
        log_table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.session_id,
            str(record.turns),
            f"{record.first_index}-{record.through_index}",
            f"[{style}]{record.status}[/{style}]",
        )
    console.print(log_table)


load_dotenv()


def main():
    result = app()
    if isinstance(result, int):
        sys.exit(result)
