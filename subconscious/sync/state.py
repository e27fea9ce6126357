"""Per-project sync state.

Tracks which remote conversation belongs to each host session and how far
each session's transcript has been delivered. Layout under
``<cwd>/.letta/claude/``:

  conversations.json    : session_id -> conversation_id (first writer wins)
  session-<id>.json     : delivery cursor + cached conversation id
  render-<id>.json      : last rendered memory snapshot (prompt hook)
  sync-log.jsonl        : append-only log of delivery attempts

Every record is rewritten whole (temp file + rename), never patched in place.
Each session owns its own files, so sessions never contend; overlapping
invocations of one session are last-writer-wins.
"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from subconscious.config import project_state_dir

logger = logging.getLogger(__name__)


def read_json(path: Path) -> Any:
    """Read a JSON file, or None if missing or unreadable."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning(f"Ignoring unreadable state file {path}: {e}")
        return None


def write_json(path: Path, data: Any) -> None:
    """Replace ``path`` with ``data`` in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def safe_session_name(session_id: str) -> str:
    # Session ids are host supplied; keep them from escaping the state dir.
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in session_id)


# ----------------------------------------------------------------------
# Conversation bindings
# ----------------------------------------------------------------------


class ConversationStore:
    """Maps host sessions to remote conversations.

    Stored as: <cwd>/.letta/claude/conversations.json
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / "conversations.json"

    def load(self) -> dict[str, str]:
        data = read_json(self.path)
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(f"Conversations map at {self.path} is not an object")
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str) and v}

    def get(self, session_id: str) -> str | None:
        return self.load().get(session_id)

    def bind(self, session_id: str, conversation_id: str) -> str:
        """Record a binding unless one already exists.

        Returns:
            The conversation id now bound to the session (an existing binding
            always wins over ``conversation_id``)
        """
        mapping = self.load()
        existing = mapping.get(session_id)
        if existing:
            if existing != conversation_id:
                logger.warning(
                    f"Session {session_id} already bound to {existing}; "
                    f"discarding {conversation_id}"
                )
            return existing

        mapping[session_id] = conversation_id
        write_json(self.path, mapping)
        logger.debug(f"Bound session {session_id} -> {conversation_id}")
        return conversation_id


# ----------------------------------------------------------------------
# Delivery cursors
# ----------------------------------------------------------------------


@dataclass
class SyncCursor:
    """How far a session's transcript has been delivered."""

    session_id: str
    conversation_id: str | None = None
    last_processed_index: int = -1
    started_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "conversationId": self.conversation_id,
            "lastProcessedIndex": self.last_processed_index,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, session_id: str, data: dict[str, Any]) -> "SyncCursor":
        index = data.get("lastProcessedIndex", -1)
        if not isinstance(index, int) or isinstance(index, bool) or index < -1:
            raise ValueError(f"invalid lastProcessedIndex: {index!r}")
        conversation_id = data.get("conversationId")
        return cls(
            session_id=session_id,
            conversation_id=conversation_id if isinstance(conversation_id, str) else None,
            last_processed_index=index,
            started_at=data.get("startedAt"),
            updated_at=data.get("updatedAt"),
        )


class SessionStateStore:
    """Per-session cursor records.

    Stored as: <cwd>/.letta/claude/session-<id>.json
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, session_id: str) -> Path:
        return self.state_dir / f"session-{safe_session_name(session_id)}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def load_cursor(self, session_id: str) -> SyncCursor:
        """Load a session's cursor; absent or malformed records start at -1."""
        data = read_json(self.path_for(session_id))
        if isinstance(data, dict):
            try:
                cursor = SyncCursor.from_dict(session_id, data)
                logger.debug(
                    f"Loaded state: lastProcessedIndex={cursor.last_processed_index}"
                )
                return cursor
            except ValueError as e:
                logger.warning(f"Discarding malformed cursor for {session_id}: {e}")
        elif data is not None:
            logger.warning(f"Discarding malformed cursor for {session_id}")

        logger.debug("No existing state, starting fresh")
        return SyncCursor(session_id=session_id)

    def save_cursor(self, cursor: SyncCursor) -> None:
        """Overwrite the session's cursor record."""
        cursor.updated_at = datetime.now(timezone.utc).isoformat()
        write_json(self.path_for(cursor.session_id), cursor.to_dict())
        logger.info(
            f"Saved state: lastProcessedIndex={cursor.last_processed_index}, "
            f"conversationId={cursor.conversation_id}"
        )

    def advance_cursor(
        self, session_id: str, conversation_id: str | None, through_index: int
    ) -> SyncCursor:
        """Move the cursor forward to ``through_index``; never backwards.

        Returns:
            The cursor as persisted
        """
        cursor = self.load_cursor(session_id)
        if through_index <= cursor.last_processed_index:
            logger.info(
                f"Cursor for {session_id} already at {cursor.last_processed_index}; "
                f"not moving back to {through_index}"
            )
            return cursor
        cursor.last_processed_index = through_index
        if conversation_id:
            cursor.conversation_id = conversation_id
        self.save_cursor(cursor)
        return cursor


def resolve_conversation(
    session_id: str,
    cwd: Path | str,
    create_conversation: Callable[[], str],
) -> str:
    """Return the session's conversation id, creating it on first need.

    Lookup order: the cursor record's cached id, then conversations.json,
    then ``create_conversation()``. A freshly created id is persisted to both
    records; a binding written meanwhile by another invocation wins.

    Args:
        session_id: Host session id
        cwd: Project directory (scope of the binding)
        create_conversation: Creates a remote conversation, returning its id

    Returns:
        Conversation id for the session
    """
    state_dir = project_state_dir(cwd)
    sessions = SessionStateStore(state_dir)
    conversations = ConversationStore(state_dir)

    cursor = sessions.load_cursor(session_id)
    if cursor.conversation_id:
        logger.info(f"Using existing conversation from state: {cursor.conversation_id}")
        return cursor.conversation_id

    conversation_id = conversations.get(session_id)
    if conversation_id:
        logger.info(f"Found conversation in map: {conversation_id}")
    else:
        conversation_id = conversations.bind(session_id, create_conversation())

    # Cache in the cursor record without touching the index. Re-read first so
    # a concurrent advance is not rolled back.
    cursor = sessions.load_cursor(session_id)
    if not cursor.conversation_id:
        cursor.conversation_id = conversation_id
        if cursor.started_at is None:
            cursor.started_at = datetime.now(timezone.utc).isoformat()
        sessions.save_cursor(cursor)
    return conversation_id


# ----------------------------------------------------------------------
# Render snapshots (prompt hook state machine)
# ----------------------------------------------------------------------


@dataclass
class RenderState:
    """What the prompt hook last surfaced for a session."""

    session_id: str
    blocks: dict[str, str] | None = None
    message_fingerprint: str | None = None
    rendered_at: str | None = None

    @property
    def has_full_render(self) -> bool:
        return self.blocks is not None


class RenderStateStore:
    """Per-session render snapshots.

    Stored as: <cwd>/.letta/claude/render-<id>.json
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, session_id: str) -> Path:
        return self.state_dir / f"render-{safe_session_name(session_id)}.json"

    def load(self, session_id: str) -> RenderState:
        data = read_json(self.path_for(session_id))
        if not isinstance(data, dict):
            return RenderState(session_id=session_id)
        blocks = data.get("blocks")
        if blocks is not None and not (
            isinstance(blocks, dict) and all(isinstance(v, str) for v in blocks.values())
        ):
            logger.warning(f"Discarding malformed render snapshot for {session_id}")
            return RenderState(session_id=session_id)
        return RenderState(
            session_id=session_id,
            blocks=blocks,
            message_fingerprint=data.get("messageFingerprint"),
            rendered_at=data.get("renderedAt"),
        )

    def reset(self, session_id: str) -> bool:
        """Forget what was surfaced, so the next prompt renders in full.

        Returns:
            True if a snapshot was discarded
        """
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        logger.info(f"Discarded render snapshot for {session_id}")
        return True

    def save(self, state: RenderState) -> None:
        state.rendered_at = datetime.now(timezone.utc).isoformat()
        write_json(
            self.path_for(state.session_id),
            {
                "sessionId": state.session_id,
                "blocks": state.blocks,
                "messageFingerprint": state.message_fingerprint,
                "renderedAt": state.rendered_at,
            },
        )


# ----------------------------------------------------------------------
# Delivery log
# ----------------------------------------------------------------------


@dataclass
class DeliveryRecord:
    """Record of one delivery attempt."""

    op_id: str
    session_id: str
    conversation_id: str | None
    first_index: int
    through_index: int
    turns: int
    status: str  # "success", "failed", "busy"
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeliveryLog:
    """Append-only log of delivery attempts, for debugging and ``status``.

    Stored as: <cwd>/.letta/claude/sync-log.jsonl
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.log_file = self.state_dir / "sync-log.jsonl"

    def log_delivery(
        self,
        session_id: str,
        conversation_id: str | None,
        first_index: int,
        through_index: int,
        turns: int,
        status: str,
        error: str | None = None,
    ) -> str:
        """Append a delivery attempt.

        Returns:
            Operation ID
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now(timezone.utc)
        op_id = (
            f"{int(timestamp.timestamp() * 1000)}_"
            f"{hashlib.md5(session_id.encode()).hexdigest()[:8]}"
        )
        entry = {
            "op_id": op_id,
            "session_id": session_id,
            "conversation_id": conversation_id,
            "first_index": first_index,
            "through_index": through_index,
            "turns": turns,
            "status": status,
            "error": error,
            "timestamp": timestamp.isoformat(),
        }
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.error(f"Failed to write to delivery log: {e}")
        return op_id

    def recent(self, limit: int = 10, session_id: str | None = None) -> list[DeliveryRecord]:
        """Most recent delivery attempts, newest first."""
        if not self.log_file.exists():
            return []

        records = []
        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                    record = DeliveryRecord(
                        op_id=entry["op_id"],
                        session_id=entry["session_id"],
                        conversation_id=entry.get("conversation_id"),
                        first_index=entry["first_index"],
                        through_index=entry["through_index"],
                        turns=entry["turns"],
                        status=entry["status"],
                        error=entry.get("error"),
                        timestamp=datetime.fromisoformat(entry["timestamp"]),
                    )
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping corrupted delivery log entry: {e}")
                    continue
                if session_id is None or record.session_id == session_id:
                    records.append(record)
        return records[-limit:][::-1]
