"""UserPromptSubmit / PreToolUse hook: surface the agent's memory."""

import logging
from pathlib import Path
from typing import IO, Callable

from subconscious.config import (
    PROMPT_TIMEOUT,
    ContextTarget,
    InjectionMode,
    Settings,
    project_state_dir,
)
from subconscious.hooks.input import HookInput, emit_context
from subconscious.letta.client import LettaClient
from subconscious.sync.agent_config import resolve_agent_id
from subconscious.sync.context import ContextInjector, fetch_memory
from subconscious.sync.state import RenderStateStore

logger = logging.getLogger(__name__)


def run(
    hook_input: HookInput,
    settings: Settings,
    event_name: str = "UserPromptSubmit",
    client_factory: Callable[[Settings, float], LettaClient] | None = None,
    stdout: IO[str] | None = None,
) -> int:
    """Fetch the agent's memory and surface whatever is new.

    Raises:
        ConfigurationError: Missing API key or malformed LETTA_AGENT_ID
        TransportError: The agent could not be fetched
    """
    if hook_input.tool_name:
        logger.info(f"{event_name} sync before tool {hook_input.tool_name}")
    if settings.mode == InjectionMode.OFF:
        logger.debug("Injection mode is off")
        return 0

    client_factory = client_factory or LettaClient.from_settings
    with client_factory(settings, PROMPT_TIMEOUT) as client:
        agent_id = resolve_agent_id(client, settings, check_model=False)
        snapshot = fetch_memory(client, agent_id)

    injector = ContextInjector(
        settings, RenderStateStore(project_state_dir(hook_input.cwd))
    )

    if settings.target == ContextTarget.DOCUMENT:
        project_dir = settings.project_dir or Path(hook_input.cwd)
        injector.write_document(project_dir, snapshot)
        return 0

    context = injector.build(hook_input.session_id, snapshot)
    if context:
        emit_context(event_name, context, stdout)
    return 0
