"""Shipping new transcript turns to the Letta conversation.

Delivery is split in two so the Stop hook returns immediately:

1. The hook computes the unsent turns, writes them to a handoff file and
   spawns a detached worker (``spawn_worker``).
2. The worker (``run_handoff``) sends the batch and, only after the server
   accepted it, advances the session cursor.

A failed or busy send leaves the cursor where it was, so the same turns are
picked up again by the next Stop hook. There is no backoff or retry timer.
"""

import json
import logging
import os
import subprocess
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from subconscious.config import DELIVERY_TIMEOUT, Settings, project_state_dir
from subconscious.errors import ConversationBusyError, SubconsciousError
from subconscious.letta.client import LettaClient
from subconscious.sync.agent_config import resolve_agent_id
from subconscious.sync.state import (
    DeliveryLog,
    SessionStateStore,
    resolve_conversation,
    safe_session_name,
    write_json,
)
from subconscious.sync.transcript import Turn

logger = logging.getLogger(__name__)

ROLE_LABELS = {"user": "User", "assistant": "Claude Code"}


def format_batch(session_id: str, turns: list[Turn]) -> str:
    """Format turns as one session-update message for the agent."""
    summary = "\n\n---\n\n".join(
        f"[{ROLE_LABELS.get(turn.role, 'System')}]: {turn.text}" for turn in turns
    )

    return f"""[Claude Code Session Update]
Session ID: {session_id}

The following conversation occurred in Claude Code:

{summary}

---

You may provide commentary or guidance for Claude Code. Your response will be added to Claude's context window (in the <letta_message> section) on the next prompt. Use this to:
- Offer observations about the user's work
- Provide reminders or context from your memory
- Suggest approaches or flag potential issues
- Send async messages/guidance to Claude Code

Write your response as if speaking directly to Claude Code."""


def deliver(
    client: LettaClient, conversation_id: str, session_id: str, turns: list[Turn]
) -> bool:
    """Send a batch of turns as a single message.

    Returns:
        True if a message was sent, False if there was nothing to send

    Raises:
        ConversationBusyError: The conversation is still busy (409)
        TransportError: The send failed
    """
    if not turns:
        logger.info("No messages to send")
        return False

    logger.info(f"Sending batch of {len(turns)} messages to conversation {conversation_id}")
    client.send_message(conversation_id, format_batch(session_id, turns), role="system")
    logger.info("Message sent to conversation successfully")
    return True


# ----------------------------------------------------------------------
# Handoff between the Stop hook and the detached worker
# ----------------------------------------------------------------------


@dataclass
class Handoff:
    """Self-contained description of one delivery."""

    session_id: str
    cwd: str
    turns: list[Turn]
    through_index: int
    conversation_id: str | None = None
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def first_index(self) -> int:
        return self.turns[0].index if self.turns else self.through_index

    def to_dict(self) -> dict:
        data = asdict(self)
        data["turns"] = [asdict(t) for t in self.turns]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Handoff":
        try:
            return cls(
                session_id=str(data["session_id"]),
                cwd=str(data["cwd"]),
                turns=[Turn(t["role"], t["text"], int(t["index"])) for t in data["turns"]],
                through_index=int(data["through_index"]),
                conversation_id=data.get("conversation_id"),
                created_at=data.get("created_at") or "",
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"malformed handoff: {e}") from e


def write_handoff(settings: Settings, handoff: Handoff) -> Path:
    """Persist a handoff file and return its path."""
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    path = settings.handoff_dir / f"{safe_session_name(handoff.session_id)}-{stamp}.json"
    write_json(path, handoff.to_dict())
    logger.info(f"Wrote handoff {path} ({len(handoff.turns)} turns)")
    return path


def load_handoff(path: Path) -> Handoff:
    """Read a handoff file.

    Raises:
        ValueError: The file is missing or malformed
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"cannot read handoff {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"malformed handoff {path}")
    return Handoff.from_dict(data)


def spawn_worker(handoff_path: Path) -> subprocess.Popen:
    """Start the delivery worker for a handoff without waiting for it."""
    command = [sys.executable, "-m", "subconscious", "deliver", str(handoff_path)]
    kwargs = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    else:
        kwargs["start_new_session"] = True

    process = subprocess.Popen(command, **kwargs)
    logger.info(f"Spawned delivery worker pid={process.pid} for {handoff_path}")
    return process


def run_handoff(
    handoff_path: Path,
    settings: Settings,
    client_factory: Callable[[Settings, float], LettaClient] | None = None,
) -> bool:
    """Perform a handed-off delivery and commit the cursor on success.

    The handoff file is removed whatever the outcome; on failure the next
    Stop hook recomputes the same turns from the unchanged cursor.

    Returns:
        True if the cursor was advanced
    """
    client_factory = client_factory or LettaClient.from_settings
    handoff_path = Path(handoff_path)

    try:
        handoff = load_handoff(handoff_path)
    except ValueError as e:
        logger.error(f"Dropping handoff: {e}")
        handoff_path.unlink(missing_ok=True)
        return False

    state_dir = project_state_dir(handoff.cwd)
    sessions = SessionStateStore(state_dir)
    delivery_log = DeliveryLog(state_dir)

    try:
        cursor = sessions.load_cursor(handoff.session_id)
        turns = [t for t in handoff.turns if t.index > cursor.last_processed_index]
        if handoff.through_index <= cursor.last_processed_index:
            logger.info(
                f"Turns through {handoff.through_index} already delivered "
                f"(cursor {cursor.last_processed_index})"
            )
            return False

        conversation_id = None
        try:
            with client_factory(settings, DELIVERY_TIMEOUT) as client:
                conversation_id = handoff.conversation_id or resolve_conversation(
                    handoff.session_id,
                    handoff.cwd,
                    lambda: client.create_conversation(
                        resolve_agent_id(client, settings, check_model=False)
                    ),
                )
                deliver(client, conversation_id, handoff.session_id, turns)
        except ConversationBusyError as e:
            logger.warning(f"Conversation busy, will retry on next stop: {e}")
            delivery_log.log_delivery(
                handoff.session_id, conversation_id, handoff.first_index,
                handoff.through_index, len(turns), "busy", str(e),
            )
            return False
        except SubconsciousError as e:
            logger.error(f"Delivery failed, cursor not advanced: {e}")
            delivery_log.log_delivery(
                handoff.session_id, conversation_id, handoff.first_index,
                handoff.through_index, len(turns), "failed", str(e),
            )
            return False

        sessions.advance_cursor(handoff.session_id, conversation_id, handoff.through_index)
        delivery_log.log_delivery(
            handoff.session_id, conversation_id, handoff.first_index,
            handoff.through_index, len(turns), "success",
        )
        return True
    finally:
        handoff_path.unlink(missing_ok=True)
