"""Letta API access.

- LettaClient: HTTP client for conversations, agents and models
- Wire models for the API payloads the hooks read
"""

from subconscious.letta.client import LettaClient
from subconscious.letta.models import (
    Agent,
    Conversation,
    LettaMessage,
    LettaModel,
    LlmConfig,
    MemoryBlock,
)

__all__ = [
    "LettaClient",
    "Agent",
    "Conversation",
    "LettaMessage",
    "LettaModel",
    "LlmConfig",
    "MemoryBlock",
]
