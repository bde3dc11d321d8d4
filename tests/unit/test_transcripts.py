"""Tests for the transcripts module."""

import json
from datetime import datetime, timezone

import pytest

from cc_recall.errors import TranscriptError
from cc_recall.transcripts import (
    TranscriptArchive,
    extract_project_name,
    hash_file,
    parse_transcript,
    session_id_for,
)


def _write_lines(path, records):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for record in records:
            f.write(record if isinstance(record, str) else json.dumps(record))
            f.write("\n")


def test_discover_sessions(config, sample_session_jsonl):
    archive = TranscriptArchive(config.archive_dir)
    transcripts = archive.discover()

    assert len(transcripts) == 1
    transcript = transcripts[0]
    assert transcript.session_id == "test-session-123"
    assert transcript.project == "code-demo-app"
    assert transcript.path == sample_session_jsonl
    assert transcript.file_size == sample_session_jsonl.stat().st_size


def test_discover_missing_archive(temp_dir):
    assert TranscriptArchive(temp_dir / "nope").discover() == []


def test_find_by_session_id(config, sample_session_jsonl):
    archive = TranscriptArchive(config.archive_dir)
    assert archive.find("test-session-123").path == sample_session_jsonl
    assert archive.find("unknown") is None


def test_session_id_is_file_stem(temp_dir):
    assert session_id_for(temp_dir / "proj" / "abc-123.jsonl") == "abc-123"


def test_extract_project_name(temp_dir):
    assert extract_project_name(temp_dir / "-Users-jesse-code-react-router" / "s.jsonl") == (
        "code-react-router"
    )
    assert extract_project_name(temp_dir / "-home-dev-work" / "s.jsonl") == "work"
    assert extract_project_name(temp_dir / "plain-project" / "s.jsonl") == "plain-project"


def test_parse_transcript(config, sample_session_jsonl):
    transcript = TranscriptArchive(config.archive_dir).find("test-session-123")
    parsed = parse_transcript(transcript)

    assert parsed.started_at == datetime(2025, 9, 15, 10, 0, tzinfo=timezone.utc)
    roles = [m.role for m in parsed.messages]
    assert roles == ["user", "assistant", "user", "assistant"]
    # Line 1 is the summary record
    assert [m.line for m in parsed.messages] == [2, 3, 4, 5]
    assert parsed.messages[1].content.startswith("For auth")


def test_parse_tool_records_yield_empty_messages(config):
    path = config.archive_dir / "proj" / "tools.jsonl"
    _write_lines(
        path,
        [
            {"type": "user", "message": {"role": "user", "content": "List the files"}},
            {
                "type": "assistant",
                "message": {"content": [{"type": "tool_use", "name": "Bash", "input": {}}]},
            },
            {
                "type": "user",
                "message": {"content": [{"type": "tool_result", "content": "a.py b.py"}]},
            },
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Two files."}]}},
        ],
    )
    parsed = parse_transcript(TranscriptArchive(config.archive_dir).find("tools"))

    assert [m.content for m in parsed.messages] == ["List the files", "", "", "Two files."]


def test_malformed_line_raises(config):
    path = config.archive_dir / "proj" / "broken.jsonl"
    _write_lines(
        path,
        [
            {"type": "user", "message": {"content": "hi"}},
            "{not json",
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hello"}]}},
        ],
    )
    with pytest.raises(TranscriptError, match="Malformed JSON"):
        parse_transcript(TranscriptArchive(config.archive_dir).find("broken"))


def test_partial_final_line_ignored(config):
    path = config.archive_dir / "proj" / "partial.jsonl"
    _write_lines(
        path,
        [
            {"type": "user", "message": {"content": "hi"}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hello"}]}},
            '{"type": "user", "message": {"con',
        ],
    )
    parsed = parse_transcript(TranscriptArchive(config.archive_dir).find("partial"))
    assert len(parsed.messages) == 2


def test_missing_timestamps_fall_back_to_mtime(config):
    path = config.archive_dir / "proj" / "nots.jsonl"
    _write_lines(path, [{"type": "user", "message": {"content": "hi"}}])
    transcript = TranscriptArchive(config.archive_dir).find("nots")
    assert parse_transcript(transcript).started_at == transcript.last_modified


def test_unreadable_transcript_raises(config, sample_session_jsonl):
    transcript = TranscriptArchive(config.archive_dir).find("test-session-123")
    sample_session_jsonl.unlink()
    with pytest.raises(TranscriptError):
        parse_transcript(transcript)
    with pytest.raises(TranscriptError):
        transcript.content_hash()


def test_hash_changes_with_content(sample_session_jsonl):
    before = hash_file(sample_session_jsonl)
    assert hash_file(sample_session_jsonl) == before

    with open(sample_session_jsonl, "a") as f:
        f.write(json.dumps({"type": "user", "message": {"content": "one more"}}) + "\n")
    assert hash_file(sample_session_jsonl) != before
