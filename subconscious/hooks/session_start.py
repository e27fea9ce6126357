"""SessionStart hook: bind the session to a conversation and say hello."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from subconscious.config import SESSION_START_TIMEOUT, Settings, project_state_dir
from subconscious.errors import TransportError
from subconscious.hooks.input import HookInput
from subconscious.letta.client import LettaClient
from subconscious.sync.agent_config import resolve_agent_id
from subconscious.sync.state import RenderStateStore, resolve_conversation

logger = logging.getLogger(__name__)

# Session sources after which the host has dropped earlier context.
CONTEXT_RESET_SOURCES = ("compact", "clear", "resume")


def session_start_message(hook_input: HookInput) -> str:
    project_name = Path(hook_input.cwd).name
    timestamp = datetime.now(timezone.utc).isoformat()
    return f"""[Session Start]
Project: {project_name}
Path: {hook_input.cwd}
Session: {hook_input.session_id}
Started: {timestamp}

A new Claude Code session has begun. I'll be sending you updates as the session progresses."""


def run(
    hook_input: HookInput,
    settings: Settings,
    client_factory: Callable[[Settings, float], LettaClient] | None = None,
) -> int:
    """Resolve the agent (checking its model) and the session's conversation.

    A resumed session keeps its conversation and its delivery cursor. After a
    compact, clear or resume the model no longer holds the memory blocks, so
    the session's render snapshot is dropped and the next prompt renders in
    full again.

    Raises:
        ConfigurationError: Missing API key or malformed LETTA_AGENT_ID
        TransportError: The conversation could not be created
    """
    if hook_input.source in CONTEXT_RESET_SOURCES:
        RenderStateStore(project_state_dir(hook_input.cwd)).reset(hook_input.session_id)

    client_factory = client_factory or LettaClient.from_settings

    with client_factory(settings, SESSION_START_TIMEOUT) as client:
        agent_id = resolve_agent_id(client, settings)
        created = []

        def create():
            conversation_id = client.create_conversation(agent_id)
            created.append(conversation_id)
            return conversation_id

        conversation_id = resolve_conversation(hook_input.session_id, hook_input.cwd, create)
        if not created:
            logger.info(f"Reusing existing conversation: {conversation_id}")

        try:
            client.send_message(conversation_id, session_start_message(hook_input))
            logger.info("Session start message sent successfully")
        except TransportError as e:
            # The binding is in place; the greeting is best effort
            logger.warning(f"Could not send session start message: {e}")

    return 0
