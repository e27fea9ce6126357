"""
Wire models for the subset of the Letta API used by the hooks.

Only the fields the sync engine reads are declared; everything else the
server sends is kept (``extra="allow"``) so it round-trips untouched,
which matters for ``llm_config`` PATCHes.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LettaModel(BaseModel):
    """A model the server can run (entry of ``GET /models/``)."""

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model: str = Field(..., description="Bare model name, e.g. gpt-5.2")
    name: Optional[str] = None
    provider_type: str = Field(..., description="Provider type, e.g. openai")
    handle: Optional[str] = Field(None, description="provider/model handle")
    display_name: Optional[str] = None


class LlmConfig(BaseModel):
    """An agent's model configuration.

    Unknown fields (sampling parameters, reasoning flags, ...) are preserved.
    """

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model: Optional[str] = None
    handle: Optional[str] = None
    provider_name: Optional[str] = None
    model_endpoint_type: Optional[str] = None
    model_endpoint: Optional[str] = None
    context_window: Optional[int] = None


class MemoryBlock(BaseModel):
    """A labelled slot of the agent's long-term memory."""

    model_config = ConfigDict(extra="allow")

    label: str
    description: Optional[str] = ""
    value: Optional[str] = ""


class Agent(BaseModel):
    """An agent, optionally with its memory blocks and model config."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    blocks: List[MemoryBlock] = Field(default_factory=list)
    llm_config: Optional[LlmConfig] = None


class Conversation(BaseModel):
    """A conversation thread on an agent."""

    model_config = ConfigDict(extra="allow")

    id: str
    agent_id: Optional[str] = None
    created_at: Optional[str] = None


class LettaMessage(BaseModel):
    """An entry of ``GET /agents/{id}/messages``."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    message_type: Optional[str] = None
    content: Optional[object] = None
    text: Optional[str] = None
    date: Optional[str] = None

    @property
    def body(self) -> Optional[str]:
        """Text of the message, if it is plain text."""
        if isinstance(self.content, str) and self.content:
            return self.content
        if self.text:
            return self.text
        return None
