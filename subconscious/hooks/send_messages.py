"""Stop hook: hand new transcript turns to a background delivery worker."""

import logging
from pathlib import Path
from typing import Callable

from subconscious.config import Settings, project_state_dir
from subconscious.errors import SubconsciousError
from subconscious.hooks.input import HookInput
from subconscious.sync.delivery import Handoff, run_handoff, spawn_worker, write_handoff
from subconscious.sync.state import ConversationStore, SessionStateStore
from subconscious.sync.transcript import read_events, select_new, summarize_kinds

logger = logging.getLogger(__name__)


def run(
    hook_input: HookInput,
    settings: Settings,
    spawn: Callable[[Path], object] = spawn_worker,
    wait: bool = False,
) -> int:
    """Queue the turns after the session cursor for delivery.

    Args:
        hook_input: Parsed hook payload
        settings: Runtime settings
        spawn: Starts the worker for a handoff file
        wait: Deliver in this process instead of spawning a worker

    Raises:
        ConfigurationError: Missing API key
        SubconsciousError: The hook payload has no transcript path
    """
    if hook_input.stop_hook_active:
        logger.info("Stop hook already active, skipping")
        return 0

    settings.require_api_key()
    if not hook_input.transcript_path:
        raise SubconsciousError("Hook input has no transcript_path")

    events = read_events(hook_input.transcript_path)
    logger.info(f"Transcript has {len(events)} records: {summarize_kinds(events)}")
    if not events:
        return 0

    state_dir = project_state_dir(hook_input.cwd)
    cursor = SessionStateStore(state_dir).load_cursor(hook_input.session_id)
    through_index = len(events) - 1
    if cursor.last_processed_index >= through_index:
        logger.info(f"Nothing new after index {cursor.last_processed_index}")
        return 0

    turns = select_new(events, cursor.last_processed_index)
    if not turns:
        logger.info("No new user or assistant turns")
        return 0

    handoff = Handoff(
        session_id=hook_input.session_id,
        cwd=hook_input.cwd,
        turns=turns,
        through_index=through_index,
        conversation_id=cursor.conversation_id
        or ConversationStore(state_dir).get(hook_input.session_id),
    )
    path = write_handoff(settings, handoff)

    if wait:
        run_handoff(path, settings)
    else:
        spawn(path)
    return 0
