"""Reading new turns out of a Claude Code transcript.

The transcript is an append-only JSONL file. Each successfully parsed record
gets an index equal to its position among parsed records; the delivery cursor
stores the last index that was forwarded, so resuming is ``index > cursor``.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 2000
TRUNCATION_MARKER = "... [truncated]"

USER = "user"
ASSISTANT = "assistant"
TOOL_RESULT = "tool_result"
OTHER = "other"


@dataclass(frozen=True)
class TranscriptEvent:
    """One parsed transcript record."""

    index: int
    kind: str
    record: dict[str, Any]


@dataclass(frozen=True)
class Turn:
    """A classified, extractable unit of transcript content."""

    role: str  # "user", "assistant" or "system" (tool results)
    text: str
    index: int


def classify(record: dict[str, Any]) -> str:
    """Classify a raw transcript record."""
    record_type = record.get("type")
    role = record.get("role")
    if record_type in ("user", "human") or role == "user":
        return USER
    if record_type == "assistant" or role == "assistant":
        return ASSISTANT
    if record_type == "tool_result" or record.get("tool_result"):
        return TOOL_RESULT
    return OTHER


def read_events(transcript_path: Path | str) -> list[TranscriptEvent]:
    """Parse a transcript file.

    Lines that are blank, fail to parse, or are not JSON objects are skipped.

    Args:
        transcript_path: Path to the JSONL transcript

    Returns:
        Parsed events in file order
    """
    path = Path(transcript_path)
    if not path.exists():
        logger.warning(f"Transcript file not found: {path}")
        return []

    events: list[TranscriptEvent] = []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse transcript line {line_no}: {e}")
                continue
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object transcript line {line_no}")
                continue
            events.append(TranscriptEvent(len(events), classify(record), record))
    return events


def extract_text(record: dict[str, Any]) -> str | None:
    """Extract the plain text of a message record.

    ``message.content`` (the Claude Code layout) wins over a top-level
    ``content``. From segment lists only ``text`` segments are kept; thinking
    and tool payload segments are never forwarded.
    """
    message = record.get("message")
    content = None
    if isinstance(message, dict):
        content = message.get("content")
    if content is None:
        content = record.get("content")

    if isinstance(content, str):
        return content or None

    if isinstance(content, list):
        parts = [
            segment["text"]
            for segment in content
            if isinstance(segment, dict)
            and segment.get("type") == "text"
            and isinstance(segment.get("text"), str)
            and segment["text"]
        ]
        if parts:
            return "\n".join(parts)
    return None


def _tool_result_text(record: dict[str, Any]) -> str | None:
    result = record.get("tool_result") or record.get("content")
    if not result:
        return None
    body = result if isinstance(result, str) else json.dumps(result)
    if len(body) > MAX_TOOL_RESULT_CHARS:
        body = body[:MAX_TOOL_RESULT_CHARS] + TRUNCATION_MARKER
    return f"[Tool Result: {record.get('tool_name') or 'unknown'}]\n{body}"


def select_new(events: Iterable[TranscriptEvent], after_index: int) -> list[Turn]:
    """Turns for every event strictly after ``after_index``, in log order."""
    turns: list[Turn] = []
    for event in events:
        if event.index <= after_index:
            continue

        if event.kind == USER:
            text = extract_text(event.record)
            role = "user"
        elif event.kind == ASSISTANT:
            text = extract_text(event.record)
            role = "assistant"
        elif event.kind == TOOL_RESULT:
            text = _tool_result_text(event.record)
            role = "system"
        else:
            continue

        if text:
            turns.append(Turn(role=role, text=text, index=event.index))
            logger.debug(f"  Message {event.index}: added {role} ({len(text)} chars)")

    logger.info(f"Selected {len(turns)} new turns after index {after_index}")
    return turns


def summarize_kinds(events: Iterable[TranscriptEvent]) -> dict[str, int]:
    """Count records by their raw type, for diagnostics."""
    return dict(
        Counter(e.record.get("type") or e.record.get("role") or "unknown" for e in events)
    )
