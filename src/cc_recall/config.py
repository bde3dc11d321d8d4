"""Runtime configuration for cc-recall."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cc_recall.errors import ConfigError

CONFIG_DIR_ENV = "CC_RECALL_CONFIG_DIR"
ARCHIVE_DIR_ENV = "CC_RECALL_ARCHIVE_DIR"
SESSION_ID_ENV = "SESSION_ID"

DEFAULT_ROOT = Path.home() / ".config" / "cc-recall"

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 16

SIMILARITY_METRICS = ("cosine", "l2")


@dataclass
class Config:
    """Settings shared by the store, pipeline, integrity manager and search engine.

    Built once at the edge (CLI or tests) and passed to each component.
    """

    root_dir: Path = field(default_factory=lambda: DEFAULT_ROOT)
    archive_override: Path | None = None
    concurrency: int = 1
    summaries: bool = True
    similarity_metric: str = "cosine"
    # Score given to text-only hits in merged search; below any cosine/l2 similarity
    text_only_score: float = -2.0
    # Added to the vector score of sessions that also matched the text search
    both_bonus: float = 0.0
    embedding_model: str = "all-MiniLM-L6-v2"
    summary_model: str = "claude-3-5-haiku-latest"
    summary_max_tokens: int = 300

    def __post_init__(self) -> None:
        self.root_dir = Path(self.root_dir).expanduser()
        if self.archive_override is not None:
            self.archive_override = Path(self.archive_override).expanduser()
        if not MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY:
            raise ConfigError(
                f"concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, "
                f"got {self.concurrency}"
            )
        if self.similarity_metric not in SIMILARITY_METRICS:
            raise ConfigError(
                f"similarity metric must be one of {', '.join(SIMILARITY_METRICS)}, "
                f"got {self.similarity_metric!r}"
            )

    @property
    def archive_dir(self) -> Path:
        """Directory holding <project>/<session-id>.jsonl transcripts."""
        if self.archive_override is not None:
            return self.archive_override
        return self.root_dir / "conversation-archive"

    @property
    def index_dir(self) -> Path:
        return self.root_dir / "conversation-index"

    @property
    def db_path(self) -> Path:
        return self.index_dir / "db.sqlite"

    @property
    def log_dir(self) -> Path:
        return self.root_dir / "logs"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> "Config":
        """Build a Config from environment variables plus explicit overrides."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        if env.get(CONFIG_DIR_ENV):
            values["root_dir"] = Path(env[CONFIG_DIR_ENV])
        if env.get(ARCHIVE_DIR_ENV):
            values["archive_override"] = Path(env[ARCHIVE_DIR_ENV])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
