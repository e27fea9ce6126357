"""Simple HTTP client for the Letta API."""

import logging
from pathlib import Path
from typing import Optional

import httpx
from pydantic import ValidationError

from subconscious.errors import (
    ConversationBusyError,
    NotFoundError,
    TransportError,
)
from subconscious.letta.models import (
    Agent,
    Conversation,
    LettaMessage,
    LettaModel,
    LlmConfig,
)

logger = logging.getLogger(__name__)

# How much of a streamed reply to read before releasing it.
STREAM_PREFIX_BYTES = 1024


class LettaClient:
    """Client for the Letta HTTP API."""

    def __init__(
        self,
        api_base: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize client.

        Args:
            api_base: API root including the version, e.g. https://api.letta.com/v1
            api_key: Bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

        self.client = httpx.Client(
            base_url=self.api_base,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings, timeout: float = 30.0) -> "LettaClient":
        """Create a client from runtime settings.

        Raises:
            ConfigurationError: LETTA_API_KEY is not set
        """
        return cls(settings.api_base, settings.require_api_key(), timeout=timeout)

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to {action}: {e}") from e
        self._raise_for_status(response, action)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        try:
            detail = response.text
        except httpx.ResponseNotRead:
            detail = response.read().decode("utf-8", errors="replace")

        message = f"Failed to {action}: {response.status_code} {detail}".strip()
        if response.status_code == 404:
            raise NotFoundError(message, status_code=404)
        if response.status_code == 409:
            raise ConversationBusyError(message, status_code=409)
        raise TransportError(message, status_code=response.status_code)

    @staticmethod
    def _parse(response: httpx.Response, action: str, parse):
        """Decode a successful reply, mapping a malformed body to TransportError."""
        try:
            return parse(response.json())
        except (ValueError, TypeError, AttributeError, ValidationError) as e:
            raise TransportError(f"Failed to {action}: invalid response: {e}") from e

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, agent_id: str) -> str:
        """Create a new conversation on an agent.

        Returns:
            The new conversation id

        Raises:
            TransportError: Request failed
        """
        logger.info(f"Creating new conversation for agent {agent_id}")
        response = self._request(
            "POST",
            "/conversations",
            "create conversation",
            params={"agent_id": agent_id},
            json={},
        )
        conversation = self._parse(
            response, "create conversation", Conversation.model_validate
        )
        logger.info(f"Created conversation: {conversation.id}")
        return conversation.id

    def send_message(
        self,
        conversation_id: str,
        content: str,
        role: str = "system",
        prefix_bytes: int = STREAM_PREFIX_BYTES,
    ) -> bytes:
        """Post a message and release the streamed reply early.

        The agent keeps processing server-side after the stream is closed;
        only acceptance of the message is confirmed here.

        Args:
            conversation_id: Target conversation
            content: Message text
            role: Message role
            prefix_bytes: Maximum bytes of the reply to read

        Returns:
            The first bytes of the streamed reply (possibly empty)

        Raises:
            ConversationBusyError: The conversation is busy (409)
            TransportError: Any other failure
        """
        url = f"/conversations/{conversation_id}/messages"
        body = {"messages": [{"role": role, "content": content}]}
        logger.info(
            f"Sending {role} message to conversation {conversation_id} "
            f"({len(content)} chars)"
        )

        try:
            with self.client.stream("POST", url, json=body) as response:
                logger.info(f"  Response status: {response.status_code}")
                self._raise_for_status(response, "send message")
                # One chunk is enough to know the stream started
                prefix = next(response.iter_bytes(), b"")
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to send message: {e}") from e

        if prefix:
            preview = prefix[:100].decode("utf-8", errors="replace")
            logger.debug(f"  Stream started, first chunk: {preview}...")
        return prefix[:prefix_bytes]

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str, include_blocks: bool = False) -> Agent:
        """Fetch an agent (with memory blocks if requested)."""
        params = {"include": "agent.blocks"} if include_blocks else None
        response = self._request(
            "GET", f"/agents/{agent_id}", "fetch agent", params=params
        )
        return self._parse(response, "fetch agent", Agent.model_validate)

    def list_agent_messages(self, agent_id: str, limit: int = 10) -> list[LettaMessage]:
        """Fetch the agent's most recent messages, oldest first."""
        response = self._request(
            "GET",
            f"/agents/{agent_id}/messages",
            "list agent messages",
            params={"limit": limit},
        )
        return self._parse(
            response,
            "list agent messages",
            lambda data: [LettaMessage.model_validate(m) for m in data],
        )

    def update_llm_config(self, agent_id: str, llm_config: LlmConfig) -> None:
        """Replace the agent's model configuration.

        Always sends the complete ``llm_config``: a top-level ``model`` field
        would reset context window and sampling settings server-side.
        """
        payload = {"llm_config": llm_config.model_dump(exclude_none=True)}
        self._request("PATCH", f"/agents/{agent_id}", "update agent model", json=payload)

    def rename_agent(self, agent_id: str, name: str) -> None:
        self._request("PATCH", f"/agents/{agent_id}", "rename agent", json={"name": name})

    def import_agent(self, agent_file: Path) -> list[str]:
        """Import an agent definition file.

        Returns:
            Ids of the imported agents
        """
        agent_file = Path(agent_file)
        files = {
            "file": (agent_file.name, agent_file.read_bytes(), "application/json")
        }
        response = self._request("POST", "/agents/import", "import agent", files=files)
        return self._parse(
            response, "import agent", lambda data: list(data.get("agent_ids") or [])
        )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def list_models(self) -> list[LettaModel]:
        """List models known to the server."""
        response = self._request("GET", "/models/", "list models")
        return self._parse(
            response,
            "list models",
            lambda data: [LettaModel.model_validate(m) for m in data],
        )

    def close(self):
        """Close the client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
