"""Tests for batch delivery and the Stop hook handoff."""

import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from conftest import AGENT_ID
from subconscious.config import project_state_dir
from subconscious.sync.delivery import (
    Handoff,
    deliver,
    format_batch,
    load_handoff,
    run_handoff,
    spawn_worker,
    write_handoff,
)
from subconscious.sync.state import ConversationStore, DeliveryLog, SessionStateStore
from subconscious.sync.transcript import Turn

TURNS = [
    Turn("user", "fix the login bug", 1),
    Turn("assistant", "Looking at auth.py", 2),
    Turn("system", "[Tool Result: Read]\ndef login(): ...", 3),
]


@pytest.fixture
def conversation(fake_letta, project_dir):
    """A session already bound to a conversation."""
    fake_letta.conversations["conv-1"] = AGENT_ID
    ConversationStore(project_state_dir(project_dir)).bind("s1", "conv-1")
    return "conv-1"


def make_handoff(project_dir, turns=TURNS, through_index=3, conversation_id="conv-1"):
    return Handoff(
        session_id="s1",
        cwd=str(project_dir),
        turns=list(turns),
        through_index=through_index,
        conversation_id=conversation_id,
    )


class TestFormatBatch:
    def test_labels_and_order(self):
        text = format_batch("s1", TURNS)

        assert text.startswith("[Claude Code Session Update]\nSession ID: s1")
        user_at = text.index("[User]: fix the login bug")
        assistant_at = text.index("[Claude Code]: Looking at auth.py")
        tool_at = text.index("[System]: [Tool Result: Read]")
        assert user_at < assistant_at < tool_at
        assert "<letta_message>" in text

    def test_deliver_nothing(self, letta_client, fake_letta):
        assert deliver(letta_client, "conv-1", "s1", []) is False
        assert fake_letta.sent == []

    def test_deliver_sends_one_message(self, letta_client, fake_letta, conversation):
        assert deliver(letta_client, conversation, "s1", TURNS) is True

        ((conversation_id, body),) = fake_letta.sent
        assert conversation_id == "conv-1"
        (message,) = body["messages"]
        assert message["role"] == "system"
        assert message["content"] == format_batch("s1", TURNS)


class TestHandoffFiles:
    def test_write_and_load(self, settings, project_dir):
        path = write_handoff(settings, make_handoff(project_dir))

        assert path.parent == settings.handoff_dir
        loaded = load_handoff(path)
        assert loaded.turns == TURNS
        assert loaded.through_index == 3
        assert loaded.first_index == 1
        assert loaded.conversation_id == "conv-1"

    def test_load_malformed(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"session_id": "s1"}')

        with pytest.raises(ValueError):
            load_handoff(path)

    def test_load_missing(self, tmp_path):
        with pytest.raises(ValueError):
            load_handoff(tmp_path / "missing.json")


class TestRunHandoff:
    def test_success_advances_cursor(
        self, settings, project_dir, client_factory, fake_letta, conversation
    ):
        path = write_handoff(settings, make_handoff(project_dir))

        assert run_handoff(path, settings, client_factory) is True

        state_dir = project_state_dir(project_dir)
        cursor = SessionStateStore(state_dir).load_cursor("s1")
        assert cursor.last_processed_index == 3
        assert cursor.conversation_id == "conv-1"
        assert len(fake_letta.sent) == 1
        assert not path.exists()
        (record,) = DeliveryLog(state_dir).recent()
        assert record.status == "success"
        assert (record.first_index, record.through_index, record.turns) == (1, 3, 3)

    def test_busy_leaves_cursor(
        self, settings, project_dir, client_factory, fake_letta, conversation
    ):
        fake_letta.busy.add(conversation)
        path = write_handoff(settings, make_handoff(project_dir))

        assert run_handoff(path, settings, client_factory) is False

        state_dir = project_state_dir(project_dir)
        assert SessionStateStore(state_dir).load_cursor("s1").last_processed_index == -1
        assert DeliveryLog(state_dir).recent()[0].status == "busy"
        assert not path.exists()

    def test_failure_leaves_cursor(
        self, settings, project_dir, client_factory, fake_letta, conversation
    ):
        fake_letta.fail_status[("POST", "/v1/conversations/conv-1/messages")] = 500
        path = write_handoff(settings, make_handoff(project_dir))

        assert run_handoff(path, settings, client_factory) is False

        state_dir = project_state_dir(project_dir)
        assert SessionStateStore(state_dir).load_cursor("s1").last_processed_index == -1
        assert DeliveryLog(state_dir).recent()[0].status == "failed"

    def test_retry_after_failure_sends_same_turns(
        self, settings, project_dir, client_factory, fake_letta, conversation
    ):
        fake_letta.busy.add(conversation)
        run_handoff(write_handoff(settings, make_handoff(project_dir)), settings, client_factory)
        fake_letta.busy.clear()

        assert run_handoff(
            write_handoff(settings, make_handoff(project_dir)), settings, client_factory
        )
        content = fake_letta.sent[0][1]["messages"][0]["content"]
        assert "fix the login bug" in content

    def test_already_delivered(
        self, settings, project_dir, client_factory, fake_letta, conversation
    ):
        SessionStateStore(project_state_dir(project_dir)).advance_cursor("s1", "conv-1", 3)
        path = write_handoff(settings, make_handoff(project_dir))

        assert run_handoff(path, settings, client_factory) is False
        assert fake_letta.sent == []
        assert not path.exists()

    def test_partially_delivered_turns_are_dropped(
        self, settings, project_dir, client_factory, fake_letta, conversation
    ):
        SessionStateStore(project_state_dir(project_dir)).advance_cursor("s1", "conv-1", 2)
        path = write_handoff(settings, make_handoff(project_dir))

        assert run_handoff(path, settings, client_factory) is True
        content = fake_letta.sent[0][1]["messages"][0]["content"]
        assert "fix the login bug" not in content
        assert "[Tool Result: Read]" in content

    def test_resolves_conversation_when_unbound(
        self, settings, project_dir, client_factory, fake_letta
    ):
        settings.agent_id = AGENT_ID
        path = write_handoff(settings, make_handoff(project_dir, conversation_id=None))

        assert run_handoff(path, settings, client_factory) is True

        state_dir = project_state_dir(project_dir)
        assert ConversationStore(state_dir).get("s1") == "conv-1"
        assert SessionStateStore(state_dir).load_cursor("s1").conversation_id == "conv-1"

    def test_malformed_handoff_is_dropped(self, settings, tmp_path, client_factory):
        path = tmp_path / "handoff.json"
        path.write_text("[]")

        assert run_handoff(path, settings, client_factory) is False
        assert not path.exists()


def test_spawn_worker_detaches(tmp_path):
    handoff_path = tmp_path / "handoff.json"
    with patch("subconscious.sync.delivery.subprocess.Popen") as popen:
        popen.return_value = MagicMock(pid=1234)
        spawn_worker(handoff_path)

    args, kwargs = popen.call_args
    assert args[0] == [sys.executable, "-m", "subconscious", "deliver", str(handoff_path)]
    assert kwargs["stdout"] is subprocess.DEVNULL
    assert kwargs["stdin"] is subprocess.DEVNULL
    if sys.platform != "win32":
        assert kwargs["start_new_session"] is True
