"""Surfacing the agent's memory into Claude Code's context.

Two independently delimited sections are produced:

- ``<letta>``: agent info plus one tagged element per memory block
- ``<letta_message>``: the agent's latest asynchronous message

They are either merged into ``.claude/CLAUDE.md`` (replaced in place, or
appended when absent) or emitted as hook context. As hook context, the first
prompt of a session gets the full block set and later prompts only get what
changed since the previous render.
"""

import difflib
import hashlib
import html
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from subconscious.config import LETTA_APP_BASE, InjectionMode, Settings
from subconscious.errors import TransportError
from subconscious.letta.client import LettaClient
from subconscious.letta.models import Agent, MemoryBlock
from subconscious.sync.state import RenderState, RenderStateStore

logger = logging.getLogger(__name__)

CLAUDE_MD_PATH = Path(".claude") / "CLAUDE.md"

LETTA_SECTION_START = "<letta>"
LETTA_SECTION_END = "</letta>"
LETTA_CONTEXT_START = "<letta_context>"
LETTA_CONTEXT_END = "</letta_context>"
LETTA_MEMORY_START = "<letta_memory_blocks>"
LETTA_MEMORY_END = "</letta_memory_blocks>"
LETTA_MESSAGE_START = "<letta_message>"
LETTA_MESSAGE_END = "</letta_message>"
LETTA_UPDATE_START = "<letta_memory_update>"
LETTA_UPDATE_END = "</letta_memory_update>"

MESSAGE_FETCH_LIMIT = 10

DEFAULT_DOCUMENT = """# Project Context

<!-- Letta agent memory is automatically synced below -->
"""


@dataclass
class LastMessage:
    """The agent's most recent assistant message."""

    text: str
    date: str | None = None

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha1(f"{self.date}\n{self.text}".encode("utf-8"))
        return digest.hexdigest()[:16]


@dataclass
class MemorySnapshot:
    agent: Agent
    last_message: LastMessage | None = None

    @property
    def blocks(self) -> dict[str, str]:
        return {block.label: block.value or "" for block in self.agent.blocks}


# ----------------------------------------------------------------------
# Fetching
# ----------------------------------------------------------------------


def fetch_last_message(client: LettaClient, agent_id: str) -> LastMessage | None:
    """Latest assistant message, or None (also when the fetch fails)."""
    try:
        messages = client.list_agent_messages(agent_id, limit=MESSAGE_FETCH_LIMIT)
    except TransportError as e:
        logger.warning(f"Could not fetch agent messages: {e}")
        return None

    for message in reversed(messages):
        if message.message_type == "assistant_message" and message.body:
            return LastMessage(text=message.body, date=message.date)
    return None


def fetch_memory(client: LettaClient, agent_id: str) -> MemorySnapshot:
    """Fetch the agent's memory blocks and latest message.

    Raises:
        TransportError: The agent could not be fetched
    """
    agent = client.get_agent(agent_id, include_blocks=True)
    logger.info(f"Fetched {len(agent.blocks)} memory blocks from {agent.id}")
    return MemorySnapshot(agent=agent, last_message=fetch_last_message(client, agent_id))


# ----------------------------------------------------------------------
# Escaping
# ----------------------------------------------------------------------


def escape_content(text: str) -> str:
    """Escape element content: only &, < and >."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def escape_attribute(text: str) -> str:
    """Escape an attribute value; newlines become spaces."""
    return (
        text.replace("&", "&amp;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("\n", " ")
    )


def unescape(text: str) -> str:
    return html.unescape(text)


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------


def render_context_section(agent: Agent) -> str:
    agent_url = f"{LETTA_APP_BASE}/agents/{agent.id}"
    name = agent.name or "Unnamed Agent"
    description = agent.description or "No description provided"

    return f"""{LETTA_CONTEXT_START}
**Subconscious Layer (Letta Agent)**

Agent: {escape_content(name)}
Description: {escape_content(description)}
View: {agent_url}

This agent maintains persistent memory across your sessions. It observes your conversations asynchronously and provides guidance below in <letta_message>. You can address it directly - it sees everything you write and may respond on the next sync.

Memory blocks below are the agent's long-term storage. Reference as needed.
{LETTA_CONTEXT_END}"""


def render_block(block: MemoryBlock) -> str:
    description = escape_attribute(block.description or "")
    value = escape_content(block.value or "")
    return f'<{block.label} description="{description}">\n{value}\n</{block.label}>'


def render_full(agent: Agent) -> str:
    """Render the ``<letta>`` section: agent info and every memory block."""
    if agent.blocks:
        body = "\n".join(render_block(block) for block in agent.blocks)
    else:
        body = "<!-- No memory blocks found -->"

    return f"""{LETTA_SECTION_START}
{render_context_section(agent)}

{LETTA_MEMORY_START}
{body}
{LETTA_MEMORY_END}
{LETTA_SECTION_END}"""


def render_message(agent: Agent, message: LastMessage | None) -> str:
    """Render the ``<letta_message>`` section."""
    name = agent.name or "Unnamed Agent"
    if message is None:
        return f"""{LETTA_MESSAGE_START}
<!-- No recent message from {escape_content(name)} -->
{LETTA_MESSAGE_END}"""

    return f"""{LETTA_MESSAGE_START}
<!--
  ASYNC MESSAGE FROM LETTA AGENT

  This is the most recent message from "{escape_content(name)}".

  NOTE: This message may not be current or directly relevant to your current task.
  The Letta agent processes Claude Code conversations asynchronously and may provide
  commentary, guidance, or context that was generated in response to earlier interactions.

  **Timestamp**: {message.date or "Unknown"}
-->

{escape_content(message.text)}
{LETTA_MESSAGE_END}"""


_BLOCK_RE = re.compile(
    r'^<(?P<label>[^\s<>/"]+) description="(?P<description>[^"]*)">\n'
    r"(?P<value>.*?)\n</(?P=label)>$",
    re.MULTILINE | re.DOTALL,
)


def parse_blocks(rendered: str) -> dict[str, tuple[str, str]]:
    """Recover ``label -> (description, value)`` from a rendered section."""
    start = rendered.find(LETTA_MEMORY_START)
    end = rendered.rfind(LETTA_MEMORY_END)
    if start != -1 and end != -1:
        rendered = rendered[start + len(LETTA_MEMORY_START) : end]

    return {
        m.group("label"): (unescape(m.group("description")), unescape(m.group("value")))
        for m in _BLOCK_RE.finditer(rendered)
    }


# ----------------------------------------------------------------------
# Diffing
# ----------------------------------------------------------------------


@dataclass
class BlockChange:
    label: str
    status: str  # "added", "removed", "modified"
    description: str = ""
    lines: list[str] = field(default_factory=list)


def diff_blocks(previous: dict[str, str], current: list[MemoryBlock]) -> list[BlockChange]:
    """Line-level changes between a previous snapshot and the current blocks."""
    changes: list[BlockChange] = []
    current_labels = set()

    for block in current:
        current_labels.add(block.label)
        value = block.value or ""
        if block.label not in previous:
            changes.append(
                BlockChange(
                    block.label, "added", block.description or "", value.splitlines()
                )
            )
            continue
        old = previous[block.label]
        if old == value:
            continue
        delta = [
            line
            for line in difflib.ndiff(old.splitlines(), value.splitlines())
            if line.startswith(("+ ", "- "))
        ]
        # Whitespace-only line ending changes produce no +/- lines
        if delta:
            changes.append(
                BlockChange(block.label, "modified", block.description or "", delta)
            )

    for label in previous:
        if label not in current_labels:
            changes.append(BlockChange(label, "removed"))
    return changes


def render_diff(changes: list[BlockChange]) -> str:
    """Render block changes as a ``<letta_memory_update>`` section."""
    parts = [
        LETTA_UPDATE_START,
        "<!-- Memory blocks changed since the last prompt. "
        "In modified blocks, lines starting with + were added and - were removed. -->",
    ]
    for change in changes:
        if change.status == "removed":
            parts.append(f'<{change.label} status="removed" />')
            continue
        attrs = f'status="{change.status}"'
        if change.status == "added":
            attrs += f' description="{escape_attribute(change.description)}"'
        body = "\n".join(escape_content(line) for line in change.lines)
        parts.append(f"<{change.label} {attrs}>\n{body}\n</{change.label}>")
    parts.append(LETTA_UPDATE_END)
    return "\n".join(parts)


# ----------------------------------------------------------------------
# Document merge
# ----------------------------------------------------------------------


def merge_into_document(document: str, section: str, start: str, end: str) -> str:
    """Replace the ``start``..``end`` section of a document, or append it.

    Markers only match at the start of a line, so escaped or quoted tags in
    content are never mistaken for the section. Applying the same section
    twice gives the same document as applying it once.
    """
    pattern = re.compile(
        rf"^{re.escape(start)}.*?^{re.escape(end)}$", re.MULTILINE | re.DOTALL
    )
    if pattern.search(document):
        return pattern.sub(lambda _: section, document)

    prefix = document.rstrip()
    if not prefix:
        return f"{section}\n"
    return f"{prefix}\n\n{section}\n"


def update_document(
    path: Path, memory_section: str | None, message_section: str | None
) -> bool:
    """Merge sections into a document file, creating it if needed.

    A ``None`` section is left untouched in the document.

    Returns:
        True if the file was written
    """
    path = Path(path)
    if path.exists():
        existing = path.read_text(encoding="utf-8")
        document = existing
    else:
        existing = None
        document = DEFAULT_DOCUMENT

    if memory_section is not None:
        document = merge_into_document(
            document, memory_section, LETTA_SECTION_START, LETTA_SECTION_END
        )
    if message_section is not None:
        document = merge_into_document(
            document, message_section, LETTA_MESSAGE_START, LETTA_MESSAGE_END
        )

    if document == existing:
        logger.debug(f"{path} already up to date")
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document, encoding="utf-8")
    logger.info(f"Updated {path}")
    return True


# ----------------------------------------------------------------------
# Injection
# ----------------------------------------------------------------------


class ContextInjector:
    """Decides what to surface for a session on each prompt.

    Per session: nothing rendered yet -> full render -> diffs. The snapshot
    of what was surfaced is kept in ``render-<id>.json``.
    """

    def __init__(self, settings: Settings, render_store: RenderStateStore):
        self.settings = settings
        self.render_store = render_store

    def build(self, session_id: str, snapshot: MemorySnapshot) -> str | None:
        """Context to emit for this prompt, or None if there is nothing new."""
        mode = self.settings.mode
        if mode == InjectionMode.OFF:
            return None

        state = self.render_store.load(session_id)
        message = snapshot.last_message
        fingerprint = message.fingerprint if message else None
        message_changed = fingerprint != state.message_fingerprint

        parts: list[str] = []
        blocks = state.blocks
        if mode == InjectionMode.FULL:
            blocks = snapshot.blocks
            if not state.has_full_render:
                logger.info(f"Full render for session {session_id}")
                parts.append(render_full(snapshot.agent))
                parts.append(render_message(snapshot.agent, message))
            else:
                changes = diff_blocks(state.blocks, snapshot.agent.blocks)
                if changes:
                    logger.info(f"{len(changes)} memory block(s) changed")
                    parts.append(render_diff(changes))
                if message_changed:
                    parts.append(render_message(snapshot.agent, message))
        elif message is not None and message_changed:
            parts.append(render_message(snapshot.agent, message))

        if not parts:
            logger.debug(f"Nothing new to surface for session {session_id}")
            return None

        self.render_store.save(
            RenderState(session_id=session_id, blocks=blocks, message_fingerprint=fingerprint)
        )
        return "\n\n".join(parts)

    def write_document(self, project_dir: Path, snapshot: MemorySnapshot) -> bool:
        """Merge the current sections into the project's CLAUDE.md."""
        mode = self.settings.mode
        if mode == InjectionMode.OFF:
            return False
        memory_section = render_full(snapshot.agent) if mode == InjectionMode.FULL else None
        message_section = render_message(snapshot.agent, snapshot.last_message)
        return update_document(
            Path(project_dir) / CLAUDE_MD_PATH, memory_section, message_section
        )
