"""Agent and model resolution.

Resolves the agent id from (in order):
1. LETTA_AGENT_ID environment variable
2. Saved global config (~/.letta/claude-subconscious/config.json)
3. Importing the default agent definition file

Then checks that the agent's model is available on the server, switching to
LETTA_MODEL or the best available model when it is not.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from subconscious.config import Settings
from subconscious.errors import (
    ConfigurationError,
    InvalidAgentIdError,
    NoModelsAvailableError,
    SubconsciousError,
)
from subconscious.letta.client import LettaClient
from subconscious.letta.models import LettaModel, LlmConfig
from subconscious.sync.state import read_json, write_json

logger = logging.getLogger(__name__)

# Preferred models, in order, for auto-selection. Weighted towards
# instruction following and tool use.
PREFERRED_MODELS = [
    "anthropic/claude-sonnet-4-5",
    "openai/gpt-4.1-mini",
    "anthropic/claude-haiku-4-5",
    "openai/gpt-5.2",
    "google_ai/gemini-3-flash",
    "google_ai/gemini-2.5-flash",
]

# agent-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx
AGENT_ID_RE = re.compile(
    r"agent-[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)


def is_valid_agent_id(agent_id: str) -> bool:
    """Check an agent id against the ``agent-<uuid>`` shape."""
    return isinstance(agent_id, str) and AGENT_ID_RE.fullmatch(agent_id) is not None


def invalid_agent_id_message(agent_id: str) -> str:
    lines = [
        f'Invalid LETTA_AGENT_ID format: "{agent_id}"',
        "",
        'The agent ID must be a UUID with the "agent-" prefix.',
        "Expected format: agent-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx",
        "Example: agent-a1b2c3d4-e5f6-7890-abcd-ef1234567890",
        "",
        "Common mistakes:",
        '  - Using the agent\'s friendly name (e.g., "Memo") instead of the UUID',
        '  - Missing the "agent-" prefix',
        "",
        "To find your agent ID:",
        "  1. Go to https://app.letta.com",
        "  2. Select your agent",
        "  3. Copy the ID from the URL or agent settings",
    ]
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Global config record
# ----------------------------------------------------------------------


@dataclass
class GlobalConfig:
    agent_id: str | None = None
    imported_at: str | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"agentId": self.agent_id, "importedAt": self.imported_at, "model": self.model}
        return {k: v for k, v in data.items() if v is not None}


class GlobalConfigStore:
    """The agent choice shared by every project on this machine."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> GlobalConfig:
        data = read_json(self.path)
        if not isinstance(data, dict):
            return GlobalConfig()

        def _str(key):
            value = data.get(key)
            return value if isinstance(value, str) and value else None

        return GlobalConfig(
            agent_id=_str("agentId"), imported_at=_str("importedAt"), model=_str("model")
        )

    def save(self, config: GlobalConfig) -> None:
        write_json(self.path, config.to_dict())


# ----------------------------------------------------------------------
# Model lookup
# ----------------------------------------------------------------------


def model_handle_of(model: LettaModel) -> str:
    return model.handle or f"{model.provider_type}/{model.model}"


def agent_model_handle(llm_config: LlmConfig | None) -> str | None:
    """Model handle (provider/model) of an agent's configuration."""
    if llm_config is None:
        return None
    if llm_config.handle:
        return llm_config.handle
    if llm_config.provider_name and llm_config.model:
        return f"{llm_config.provider_name}/{llm_config.model}"
    return llm_config.model or None


def find_model(models: list[LettaModel], model_handle: str) -> LettaModel | None:
    """Find a model by handle, bare model name, or provider/name.

    Matching is case-insensitive and exact.
    """
    wanted = model_handle.lower()
    for model in models:
        if model_handle_of(model).lower() == wanted:
            return model
        if model.model and model.model.lower() == wanted:
            return model
        if model.name and f"{model.provider_type}/{model.name}".lower() == wanted:
            return model
    return None


def is_model_available(models: list[LettaModel], model_handle: str) -> bool:
    return find_model(models, model_handle) is not None


def select_best_model(models: list[LettaModel], preferences: list[str]) -> str | None:
    """First preferred model the server offers, else the server's first model."""
    for preferred in preferences:
        if is_model_available(models, preferred):
            return preferred
    if models:
        return model_handle_of(models[0])
    return None


def parse_context_window(raw: str | int | None) -> int | None:
    """Parse a context window override; anything but a positive int is ignored."""
    if raw is None:
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


def build_llm_config(
    model_handle: str,
    models: list[LettaModel],
    current: LlmConfig | None,
    context_window: str | int | None = None,
) -> LlmConfig:
    """Build the llm_config for switching to ``model_handle``.

    Starts from the agent's current config so context window, sampling and
    reasoning settings carry over; only the model identity fields change.
    A valid ``context_window`` override replaces the current value.
    """
    provider_name, sep, model_name = model_handle.partition("/")
    if not sep or not provider_name:
        provider_name, model_name = None, model_handle

    info = find_model(models, model_handle)
    base = current.model_dump() if current is not None else {}

    config = dict(base)
    config["model"] = model_name
    config["handle"] = model_handle
    config["provider_name"] = (
        provider_name or (info.provider_type if info else None) or base.get("provider_name")
    )
    config["model_endpoint_type"] = (
        info.provider_type if info else None
    ) or base.get("model_endpoint_type")

    override = parse_context_window(context_window)
    if override is not None:
        config["context_window"] = override

    return LlmConfig.model_validate(config)


@dataclass
class ModelDecision:
    """A model change to apply to the agent."""

    handle: str
    reason: str


def plan_model_update(
    models: list[LettaModel],
    llm_config: LlmConfig | None,
    model_override: str | None = None,
    context_window: str | int | None = None,
) -> ModelDecision | None:
    """Decide whether the agent's model must change.

    Returns:
        The change to make, or None when the current model is fine

    Raises:
        NoModelsAvailableError: The server offers no models
    """
    if not models:
        raise NoModelsAvailableError(
            "No models available on this server. Please configure your Letta "
            "server with at least one LLM provider."
        )

    current = agent_model_handle(llm_config)

    if model_override:
        wanted = find_model(models, model_override)
        if wanted is not None:
            same = {model_override.lower(), model_handle_of(wanted).lower()}
            if (current or "").lower() not in same:
                return ModelDecision(model_override, "LETTA_MODEL override")
            wanted_cw = parse_context_window(context_window)
            current_cw = llm_config.context_window if llm_config else None
            if wanted_cw is not None and current_cw != wanted_cw:
                return ModelDecision(
                    model_override,
                    f"context_window {current_cw} -> {wanted_cw}",
                )
            return None
        handles = [model_handle_of(m) for m in models]
        more = "..." if len(handles) > 10 else ""
        logger.warning(f'LETTA_MODEL="{model_override}" is not available on this server')
        logger.warning(f"Available models: {', '.join(handles[:10])}{more}")

    if current and is_model_available(models, current):
        logger.info(f'Agent\'s model "{current}" is available')
        return None

    logger.warning(f'Agent\'s model "{current}" is NOT available on this server')
    selected = select_best_model(models, PREFERRED_MODELS)
    # models is non-empty, so a selection always exists
    return ModelDecision(selected, f"model {current} unavailable")


def ensure_model_available(
    client: LettaClient, agent_id: str, settings: Settings
) -> str | None:
    """Make sure the agent runs a model the server offers.

    Returns:
        The model handle that was configured, or None if nothing changed

    Raises:
        NoModelsAvailableError: The server offers no models
        TransportError: An API call failed
    """
    models = client.list_models()
    agent = client.get_agent(agent_id)
    logger.info(f"Agent's current model: {agent_model_handle(agent.llm_config) or 'unknown'}")
    logger.info(f"Available models: {len(models)} found")

    decision = plan_model_update(
        models, agent.llm_config, settings.model, settings.context_window
    )
    if decision is None:
        return None

    logger.info(f"Updating agent model to {decision.handle} ({decision.reason})")
    llm_config = build_llm_config(
        decision.handle, models, agent.llm_config, settings.context_window
    )
    current_cw = agent.llm_config.context_window if agent.llm_config else None
    if llm_config.context_window and llm_config.context_window != current_cw:
        logger.info(f"Including context_window: {llm_config.context_window}")
    client.update_llm_config(agent_id, llm_config)
    logger.info(f"Agent model updated to: {decision.handle}")
    return decision.handle


# ----------------------------------------------------------------------
# Agent resolution
# ----------------------------------------------------------------------


def agent_name_from_file(agent_file: Path) -> str:
    """Name of the first agent in a definition file, else the file stem."""
    try:
        content = json.loads(Path(agent_file).read_text(encoding="utf-8"))
        agents = content.get("agents") or []
        if agents and agents[0].get("name"):
            return agents[0]["name"]
    except (OSError, ValueError, AttributeError):
        pass
    return Path(agent_file).stem


def import_default_agent(client: LettaClient, settings: Settings) -> str:
    """Import the default agent definition and rename it to its own name.

    Raises:
        ConfigurationError: The definition file is missing
        TransportError: The import failed
    """
    agent_file = settings.agent_file
    if not agent_file.exists():
        raise ConfigurationError(
            f"Default agent file not found: {agent_file}\n"
            "Set LETTA_AGENT_ID to use an existing agent, or LETTA_AGENT_FILE "
            "to point at an agent definition (.af) file."
        )

    agent_ids = client.import_agent(agent_file)
    if not agent_ids:
        raise SubconsciousError("Import succeeded but no agent ID returned")
    agent_id = agent_ids[0]

    # The import appends "_copy" to the name; restore it
    try:
        client.rename_agent(agent_id, agent_name_from_file(agent_file))
    except SubconsciousError as e:
        logger.warning(f"Could not rename agent: {e}")
    return agent_id


def resolve_agent_id(
    client: LettaClient,
    settings: Settings,
    store: GlobalConfigStore | None = None,
    check_model: bool = True,
) -> str:
    """Get the agent id to sync with, importing the default agent if needed.

    Raises:
        InvalidAgentIdError: LETTA_AGENT_ID is set but malformed
        ConfigurationError: Nothing configured and no agent file to import
        TransportError: Importing the agent failed
    """
    store = store or GlobalConfigStore(settings.global_config_file)
    config = store.read()

    if settings.agent_id is not None:
        if not is_valid_agent_id(settings.agent_id):
            message = invalid_agent_id_message(settings.agent_id)
            logger.error(message)
            raise InvalidAgentIdError(message)
        logger.info(f"Using agent ID from LETTA_AGENT_ID: {settings.agent_id}")
        agent_id = settings.agent_id
    elif config.agent_id and is_valid_agent_id(config.agent_id):
        logger.info(f"Using saved agent ID: {config.agent_id}")
        agent_id = config.agent_id
    else:
        if config.agent_id:
            logger.warning(f"Saved agent ID has invalid format: {config.agent_id}")
            logger.warning("Ignoring invalid saved config and importing default agent")
        logger.info("No agent configured - importing default agent...")
        agent_id = import_default_agent(client, settings)
        config = GlobalConfig(
            agent_id=agent_id, imported_at=datetime.now(timezone.utc).isoformat()
        )
        store.save(config)
        logger.info(f"Imported agent {agent_id}; saved to {store.path}")

    if check_model:
        try:
            configured = ensure_model_available(client, agent_id, settings)
        except SubconsciousError as e:
            logger.warning(f"Could not verify model availability: {e}")
            configured = None
        # The saved record describes the saved agent only
        if configured and config.agent_id == agent_id and config.model != configured:
            config.model = configured
            store.save(config)

    return agent_id


def needs_import(settings: Settings, store: GlobalConfigStore | None = None) -> bool:
    """True when resolving would import the default agent."""
    if settings.agent_id:
        return False
    store = store or GlobalConfigStore(settings.global_config_file)
    agent_id = store.read().agent_id
    return not (agent_id and is_valid_agent_id(agent_id))
