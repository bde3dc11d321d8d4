"""Read-only access to the archived JSONL transcripts."""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cc_recall.errors import TranscriptError
from cc_recall.models import Message

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1 << 16


@dataclass
class TranscriptFile:
    """A transcript on disk, identified by its file name."""

    session_id: str
    project: str
    path: Path
    last_modified: datetime
    file_size: int

    def content_hash(self) -> str:
        return hash_file(self.path)


@dataclass
class ParsedTranscript:
    started_at: datetime
    messages: list[Message]


def session_id_for(path: Path) -> str:
    """Session IDs are the transcript file stem (a UUID in Claude Code archives)."""
    return path.stem


def extract_project_name(path: Path) -> str:
    """Extract a project name from a transcript path.

    Archive directories mirror ~/.claude/projects, where the project path is
    encoded with dashes: -Users-name-code-my-app/<session>.jsonl -> code-my-app
    """
    encoded = path.parent.name
    if not encoded.startswith("-"):
        return encoded

    parts = encoded.lstrip("-").split("-")
    # Drop the home prefix (/Users/<name> or /home/<name>)
    if len(parts) > 2 and parts[0] in ("Users", "home"):
        parts = parts[2:]
    meaningful = "-".join(p for p in parts if p)
    return meaningful or encoded


def hash_file(path: Path) -> str:
    """sha256 of the file contents."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
                digest.update(block)
    except OSError as e:
        raise TranscriptError(f"Cannot read {path}: {e}") from e
    return digest.hexdigest()


class TranscriptArchive:
    """The archive directory: <root>/<project>/<session-id>.jsonl."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def discover(self) -> list[TranscriptFile]:
        """All transcripts in the archive, sorted by path."""
        if not self.root.exists():
            return []

        files: list[TranscriptFile] = []
        seen: dict[str, Path] = {}
        for path in sorted(self.root.glob("*/*.jsonl")):
            session_id = session_id_for(path)
            if session_id in seen:
                logger.warning(
                    "Duplicate session id %s: %s shadows %s", session_id, path, seen[session_id]
                )
                continue
            seen[session_id] = path
            transcript = self.describe(path)
            if transcript is not None:
                files.append(transcript)
        return files

    def find(self, session_id: str) -> TranscriptFile | None:
        """Locate a single transcript by session ID."""
        if not self.root.exists():
            return None
        for path in sorted(self.root.glob(f"*/{session_id}.jsonl")):
            return self.describe(path)
        return None

    def describe(self, path: Path) -> TranscriptFile | None:
        try:
            stat = path.stat()
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            return None
        return TranscriptFile(
            session_id=session_id_for(path),
            project=extract_project_name(path),
            path=path,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            file_size=stat.st_size,
        )


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _text_blocks(content: object) -> str:
    """Join the text blocks of a message content field."""
    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""
    texts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(t.strip() for t in texts if isinstance(t, str) and t.strip())


def parse_transcript(transcript: TranscriptFile) -> ParsedTranscript:
    """Parse a transcript into messages.

    Records that are not user/assistant messages are skipped. A record carrying
    no text (tool calls, tool results) yields an empty message so the exchange
    line range still covers it. An unparsable final line is treated as a
    partial append and ignored; an unparsable line anywhere else makes the
    whole transcript malformed.
    """
    try:
        with open(transcript.path, encoding="utf-8") as f:
            lines = f.read().splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise TranscriptError(f"Cannot read {transcript.path}: {e}") from e

    # Trailing blank lines don't count when deciding what the final record is
    last_line = len(lines)
    while last_line > 0 and not lines[last_line - 1].strip():
        last_line -= 1

    messages: list[Message] = []
    started_at: datetime | None = None

    for line_num, line in enumerate(lines[:last_line], 1):
        line = line.strip()
        if not line:
            continue

        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            if line_num == last_line:
                logger.debug("Ignoring partial final line in %s", transcript.path)
                break
            raise TranscriptError(
                f"Malformed JSON at {transcript.path}:{line_num}: {e.msg}"
            ) from e

        if not isinstance(record, dict):
            continue

        record_type = record.get("type")
        if record_type not in ("user", "assistant"):
            continue

        timestamp = _parse_timestamp(record.get("timestamp"))
        if started_at is None and timestamp is not None:
            started_at = timestamp

        msg_data = record.get("message")
        content = msg_data.get("content", "") if isinstance(msg_data, dict) else ""
        messages.append(
            Message(
                role=record_type,
                content=_text_blocks(content),
                line=line_num,
                timestamp=timestamp,
            )
        )

    return ParsedTranscript(
        started_at=started_at or transcript.last_modified,
        messages=messages,
    )
