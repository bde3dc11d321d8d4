"""Pytest fixtures for cc-recall tests."""

import json
import tempfile
import threading
import time
from pathlib import Path

import pytest

from cc_recall.config import Config
from cc_recall.errors import EnrichmentError
from cc_recall.models import Exchange, Session

# Embedding dimensions of the fake provider: one per keyword plus a constant
KEYWORDS = ("auth", "database", "router", "deploy")


class FakeProvider:
    """Deterministic enrichment provider that tracks concurrent calls."""

    def __init__(self, delay: float = 0.0, fail_marker: str = "EXPLODE") -> None:
        self.delay = delay
        self.fail_marker = fail_marker
        self._lock = threading.Lock()
        self._current = 0
        self.peak = 0
        self.embed_calls = 0
        self.summary_calls = 0

    @staticmethod
    def vector(text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(k)) for k in KEYWORDS] + [0.1]

    def _enter(self) -> None:
        with self._lock:
            self._current += 1
            self.peak = max(self.peak, self._current)

    def _exit(self) -> None:
        with self._lock:
            self._current -= 1

    def embed(self, texts: list[str]) -> list[list[float]]:
        self._enter()
        try:
            with self._lock:
                self.embed_calls += 1
            if self.delay:
                time.sleep(self.delay)
            if any(self.fail_marker in t for t in texts):
                raise EnrichmentError("embedding service unavailable")
            return [self.vector(t) for t in texts]
        finally:
            self._exit()

    def summarize(self, session: Session, exchanges: list[Exchange]) -> str:
        self._enter()
        try:
            with self._lock:
                self.summary_calls += 1
            if self.delay:
                time.sleep(self.delay)
            return f"Summary of {session.id}: {exchanges[0].text[:40]}"
        finally:
            self._exit()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir):
    return Config(root_dir=temp_dir / "cc-recall")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store(config):
    from cc_recall.storage import IndexStore

    store = IndexStore(config.db_path)
    yield store
    store.close()


def write_transcript(
    archive_dir: Path,
    session_id: str,
    exchanges: list[tuple[str, str]],
    project: str = "-Users-dev-code-demo-app",
    started_at: str = "2025-09-15T10:00:00Z",
) -> Path:
    """Write a Claude Code style JSONL transcript with one user/assistant pair per exchange."""
    path = archive_dir / project / f"{session_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)

    records = [{"type": "summary", "summary": "ignored", "leafUuid": "x"}]
    for i, (question, answer) in enumerate(exchanges):
        records.append(
            {
                "type": "user",
                "uuid": f"{session_id}-u{i}",
                "sessionId": session_id,
                "timestamp": started_at,
                "message": {"role": "user", "content": question},
            }
        )
        records.append(
            {
                "type": "assistant",
                "uuid": f"{session_id}-a{i}",
                "sessionId": session_id,
                "timestamp": started_at,
                "message": {"role": "assistant", "content": [{"type": "text", "text": answer}]},
            }
        )

    with open(path, "w") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")
    return path


@pytest.fixture
def sample_session_jsonl(config):
    """Create a sample JSONL session file in the archive."""
    return write_transcript(
        config.archive_dir,
        "test-session-123",
        [
            ("How do I implement authentication?", "For auth, you can use JWT tokens..."),
            ("Can you show me an example?", "Here's an example of JWT auth in Python..."),
        ],
    )
