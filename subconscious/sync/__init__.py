"""Synchronization between a Claude Code session and a Letta agent.

This module provides:
- state: conversation bindings, delivery cursors, render snapshots
- transcript: parsing the session transcript into turns
- agent_config: agent and model resolution
- delivery: shipping turns to the agent from a detached worker
- context: rendering agent memory into Claude Code's context
"""

from subconscious.sync.agent_config import (
    GlobalConfigStore,
    build_llm_config,
    ensure_model_available,
    find_model,
    is_valid_agent_id,
    resolve_agent_id,
    select_best_model,
)
from subconscious.sync.context import (
    ContextInjector,
    MemorySnapshot,
    fetch_memory,
    merge_into_document,
    render_full,
    render_message,
)
from subconscious.sync.delivery import Handoff, deliver, run_handoff, spawn_worker
from subconscious.sync.state import (
    ConversationStore,
    DeliveryLog,
    RenderStateStore,
    SessionStateStore,
    SyncCursor,
    resolve_conversation,
)
from subconscious.sync.transcript import Turn, extract_text, read_events, select_new

__all__ = [
    # State
    "ConversationStore",
    "DeliveryLog",
    "RenderStateStore",
    "SessionStateStore",
    "SyncCursor",
    "resolve_conversation",
    # Transcript
    "Turn",
    "extract_text",
    "read_events",
    "select_new",
    # Agent config
    "GlobalConfigStore",
    "build_llm_config",
    "ensure_model_available",
    "find_model",
    "is_valid_agent_id",
    "resolve_agent_id",
    "select_best_model",
    # Delivery
    "Handoff",
    "deliver",
    "run_handoff",
    "spawn_worker",
    # Context
    "ContextInjector",
    "MemorySnapshot",
    "fetch_memory",
    "merge_into_document",
    "render_full",
    "render_message",
]
