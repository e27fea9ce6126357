"""Tests for transcript parsing and turn selection."""

import json

import pytest

from subconscious.sync.transcript import (
    ASSISTANT,
    MAX_TOOL_RESULT_CHARS,
    OTHER,
    TOOL_RESULT,
    TRUNCATION_MARKER,
    USER,
    classify,
    extract_text,
    read_events,
    select_new,
    summarize_kinds,
)


def write_transcript(path, lines):
    path.write_text(
        "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines)
        + "\n"
    )
    return path


def user(text):
    return {"type": "user", "message": {"role": "user", "content": text}}


def assistant(*segments):
    return {"type": "assistant", "message": {"role": "assistant", "content": list(segments)}}


@pytest.fixture
def transcript(tmp_path):
    return write_transcript(
        tmp_path / "session.jsonl",
        [
            {"type": "summary", "summary": "earlier work"},
            user("fix the login bug"),
            assistant(
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Looking at auth.py"},
                {"type": "tool_use", "name": "Read", "input": {}},
            ),
            {"type": "tool_result", "tool_name": "Read", "content": "def login(): ..."},
            assistant({"type": "text", "text": "Fixed."}),
        ],
    )


class TestClassify:
    @pytest.mark.parametrize(
        "record,kind",
        [
            ({"type": "user"}, USER),
            ({"type": "human"}, USER),
            ({"role": "user"}, USER),
            ({"type": "assistant"}, ASSISTANT),
            ({"role": "assistant"}, ASSISTANT),
            ({"type": "tool_result"}, TOOL_RESULT),
            ({"tool_result": "out"}, TOOL_RESULT),
            ({"type": "summary"}, OTHER),
            ({}, OTHER),
        ],
    )
    def test_kinds(self, record, kind):
        assert classify(record) == kind


class TestReadEvents:
    def test_indexes_parsed_records(self, transcript):
        events = read_events(transcript)

        assert [e.index for e in events] == [0, 1, 2, 3, 4]
        assert [e.kind for e in events] == [OTHER, USER, ASSISTANT, TOOL_RESULT, ASSISTANT]

    def test_missing_file(self, tmp_path):
        assert read_events(tmp_path / "nope.jsonl") == []

    def test_skips_bad_lines(self, tmp_path):
        path = write_transcript(
            tmp_path / "t.jsonl",
            [user("one"), "{broken", "", "[1, 2]", user("two")],
        )
        events = read_events(path)

        assert [e.index for e in events] == [0, 1]
        assert extract_text(events[1].record) == "two"


class TestExtractText:
    def test_string_content(self):
        assert extract_text(user("hello")) == "hello"

    def test_empty_string(self):
        assert extract_text(user("")) is None

    def test_text_segments_only(self):
        record = assistant(
            {"type": "thinking", "thinking": "secret"},
            {"type": "text", "text": "first"},
            {"type": "tool_use", "name": "Bash"},
            {"type": "text", "text": "second"},
        )
        assert extract_text(record) == "first\nsecond"

    def test_no_text_segments(self):
        assert extract_text(assistant({"type": "tool_use", "name": "Bash"})) is None

    def test_message_content_wins(self):
        record = {"type": "user", "content": "outer", "message": {"content": "inner"}}
        assert extract_text(record) == "inner"

    def test_top_level_content(self):
        assert extract_text({"role": "user", "content": "plain"}) == "plain"


class TestSelectNew:
    def test_all_turns(self, transcript):
        turns = select_new(read_events(transcript), -1)

        assert [(t.role, t.index) for t in turns] == [
            ("user", 1),
            ("assistant", 2),
            ("system", 3),
            ("assistant", 4),
        ]
        assert turns[1].text == "Looking at auth.py"
        assert turns[2].text == "[Tool Result: Read]\ndef login(): ..."

    def test_after_cursor(self, transcript):
        turns = select_new(read_events(transcript), 2)

        assert [t.index for t in turns] == [3, 4]

    def test_cursor_at_end(self, transcript):
        assert select_new(read_events(transcript), 4) == []

    def test_growing_transcript_never_repeats(self, transcript):
        first = select_new(read_events(transcript), -1)
        cursor = len(read_events(transcript)) - 1

        with open(transcript, "a") as f:
            f.write(json.dumps(user("now add a test")) + "\n")
            f.write(json.dumps(assistant({"type": "text", "text": "Added."})) + "\n")
        second = select_new(read_events(transcript), cursor)

        assert [t.index for t in second] == [5, 6]
        assert [t.text for t in second] == ["now add a test", "Added."]
        seen = [t.index for t in first + second]
        assert len(seen) == len(set(seen))
        assert seen == sorted(seen)

    def test_tool_result_truncated(self, tmp_path):
        path = write_transcript(
            tmp_path / "t.jsonl", [{"type": "tool_result", "content": "x" * 5000}]
        )
        (turn,) = select_new(read_events(path), -1)

        assert turn.text.startswith("[Tool Result: unknown]\n")
        assert turn.text.endswith(TRUNCATION_MARKER)
        body = turn.text.split("\n", 1)[1]
        assert len(body) == MAX_TOOL_RESULT_CHARS + len(TRUNCATION_MARKER)

    def test_structured_tool_result(self, tmp_path):
        path = write_transcript(
            tmp_path / "t.jsonl",
            [{"type": "tool_result", "tool_name": "Grep", "tool_result": {"matches": 2}}],
        )
        (turn,) = select_new(read_events(path), -1)

        assert turn.text == '[Tool Result: Grep]\n{"matches": 2}'


def test_summarize_kinds(transcript):
    assert summarize_kinds(read_events(transcript)) == {
        "summary": 1,
        "user": 1,
        "assistant": 2,
        "tool_result": 1,
    }
