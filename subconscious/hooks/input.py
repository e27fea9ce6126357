"""Hook input and output.

Claude Code passes each hook a JSON object on stdin and reads anything the
hook prints to stdout as context for the model.
"""

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from subconscious.errors import SubconsciousError

logger = logging.getLogger(__name__)


@dataclass
class HookInput:
    """The fields of a hook payload the sync hooks use."""

    session_id: str
    cwd: str
    hook_event_name: str | None = None
    transcript_path: str | None = None
    stop_hook_active: bool = False
    source: str | None = None
    tool_name: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HookInput":
        session_id = data.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise SubconsciousError("Hook input has no session_id")
        return cls(
            session_id=session_id,
            cwd=data.get("cwd") or str(Path.cwd()),
            hook_event_name=data.get("hook_event_name"),
            transcript_path=data.get("transcript_path"),
            stop_hook_active=bool(data.get("stop_hook_active")),
            source=data.get("source"),
            tool_name=data.get("tool_name"),
        )


def read_hook_input(stream: IO[str] | None = None) -> HookInput:
    """Parse the hook payload from stdin.

    Raises:
        SubconsciousError: The payload is not a JSON object with a session_id
    """
    raw = (stream or sys.stdin).read()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SubconsciousError(f"Failed to parse hook input: {e}") from e
    if not isinstance(data, dict):
        raise SubconsciousError("Failed to parse hook input: not a JSON object")

    hook_input = HookInput.from_dict(data)
    logger.info(
        f"Hook input: event={hook_input.hook_event_name}, "
        f"session_id={hook_input.session_id}, cwd={hook_input.cwd}"
    )
    return hook_input


def emit_context(event_name: str, context: str, stream: IO[str] | None = None) -> None:
    """Print additional context for the host to add to the model's context."""
    payload = {
        "hookSpecificOutput": {
            "hookEventName": event_name,
            "additionalContext": context,
        }
    }
    out = stream or sys.stdout
    out.write(json.dumps(payload) + "\n")
    out.flush()
