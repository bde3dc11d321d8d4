"""Data models for cc-recall."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path


class IndexStatus(str, Enum):
    UNINDEXED = "unindexed"
    INDEXED = "indexed"
    STALE = "stale"
    FAILED = "failed"


class SummaryStatus(str, Enum):
    PENDING = "pending"
    PRESENT = "present"
    SKIPPED = "skipped"  # summaries disabled for the run; not an error


# Statuses picked up by index-cleanup
NEEDS_INDEXING = frozenset({IndexStatus.UNINDEXED, IndexStatus.STALE, IndexStatus.FAILED})

# Statuses whose exchanges are visible to search
SEARCHABLE = (IndexStatus.INDEXED, IndexStatus.STALE)


@dataclass
class Message:
    """A single parsed record within a transcript."""

    role: str  # "user" | "assistant"
    content: str
    line: int  # 1-based line number in the source file
    timestamp: datetime | None = None


@dataclass
class Session:
    """An archived conversation (one JSONL file)."""

    id: str
    project: str
    path: Path
    started_at: datetime
    last_modified: datetime
    file_size: int = 0
    content_hash: str = ""
    index_status: IndexStatus = IndexStatus.UNINDEXED
    summary: str | None = None
    summary_status: SummaryStatus = SummaryStatus.PENDING
    error: str | None = None
    indexed_at: datetime | None = None


@dataclass
class Exchange:
    """A user request and the assistant response that follows it."""

    session_id: str
    ordinal: int
    line_start: int
    line_end: int
    text: str
    embedding: list[float] | None = None


@dataclass
class IndexEntry:
    """A session with its exchanges; written to the store as one unit."""

    session: Session
    exchanges: list[Exchange] = field(default_factory=list)

    @property
    def missing_embeddings(self) -> int:
        return sum(1 for e in self.exchanges if e.embedding is None)


@dataclass
class DateRange:
    """Inclusive date bounds on a session's start date; either side may be open."""

    after: date | None = None
    before: date | None = None


@dataclass
class SearchResult:
    """A matched exchange with the session it belongs to."""

    session: Session
    exchange: Exchange
    similarity: float | None = None  # None for text-only matches
    score: float = 0.0

    @property
    def locator(self) -> str:
        return f"{self.session.path}:{self.exchange.line_start}-{self.exchange.line_end}"


@dataclass
class SessionFailure:
    session_id: str
    path: Path | None
    reason: str


@dataclass
class IndexReport:
    """Outcome of an indexing run."""

    indexed: list[str] = field(default_factory=list)
    failed: list[SessionFailure] = field(default_factory=list)
    up_to_date: int = 0
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.interrupted


@dataclass
class VerifyReport:
    """Findings of a read-only integrity scan."""

    orphaned: list[str] = field(default_factory=list)
    corrupted: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)  # informational
    schema_version: int = 0
    expected_schema_version: int = 0

    @property
    def schema_mismatch(self) -> bool:
        return self.schema_version != self.expected_schema_version

    @property
    def has_issues(self) -> bool:
        return bool(self.orphaned or self.corrupted or self.stale or self.schema_mismatch)


@dataclass
class RepairReport:
    """Changes applied by a repair run."""

    deleted: list[str] = field(default_factory=list)
    reset: list[str] = field(default_factory=list)
    migrated_from: int | None = None
    unrepairable: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.deleted or self.reset or self.migrated_from is not None)
