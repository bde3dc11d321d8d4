"""SQLite storage for the conversation index."""

import contextlib
import logging
import sqlite3
import struct
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import sqlite_vec

from cc_recall.errors import SchemaVersionError, StoreError
from cc_recall.models import (
    SEARCHABLE,
    DateRange,
    Exchange,
    IndexEntry,
    IndexStatus,
    SearchResult,
    Session,
    SummaryStatus,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Seconds to wait for another process holding the write lock
BUSY_TIMEOUT = 30.0

DISTANCE_FUNCTIONS = {
    "cosine": "vec_distance_cosine",
    "l2": "vec_distance_l2",
}


_BASE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        project TEXT NOT NULL,
        path TEXT NOT NULL,
        started_at TEXT NOT NULL,
        last_modified TEXT NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        content_hash TEXT NOT NULL DEFAULT '',
        index_status TEXT NOT NULL,
        summary TEXT,
        summary_status TEXT NOT NULL DEFAULT 'pending'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exchanges (
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        ordinal INTEGER NOT NULL,
        line_start INTEGER NOT NULL,
        line_end INTEGER NOT NULL,
        text TEXT NOT NULL,
        embedding BLOB,  -- float32 vector, NULL when enrichment is missing
        PRIMARY KEY (session_id, ordinal)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
]


def _create_base_tables(conn: sqlite3.Connection) -> None:
    for statement in _BASE_TABLES:
        conn.execute(statement)


def _add_failure_tracking(conn: sqlite3.Connection) -> None:
    columns = {row[1] for row in conn.execute("PRAGMA table_info(sessions)")}
    if "error" not in columns:
        conn.execute("ALTER TABLE sessions ADD COLUMN error TEXT")
    if "indexed_at" not in columns:
        conn.execute("ALTER TABLE sessions ADD COLUMN indexed_at TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS sessions_started_at ON sessions(started_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS sessions_status ON sessions(index_status)")


# Ordered migrations; entry i upgrades a store from version i to i + 1.
# Each must be safe to re-run.
MIGRATIONS: list[Callable[[sqlite3.Connection], None]] = [
    _create_base_tables,
    _add_failure_tracking,
]


def _ts(value: datetime) -> str:
    """Serialize a timestamp as UTC ISO-8601 (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def serialize_embedding(embedding: list[float] | None) -> bytes | None:
    if embedding is None:
        return None
    return sqlite_vec.serialize_float32(embedding)


def deserialize_embedding(blob: bytes | None) -> list[float] | None:
    if blob is None:
        return None
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def _casefold(value: object) -> str | None:
    return value.casefold() if isinstance(value, str) else None


def _first_per_session(sql: str, order_by: str) -> str:
    """Wrap a hit query so only the first row of each session (by ``order_by``) remains."""
    return f"""
        SELECT * FROM (
            SELECT *, ROW_NUMBER() OVER (
                PARTITION BY session_id ORDER BY {order_by}
            ) AS session_rank
            FROM ({sql})
        )
        WHERE session_rank = 1
    """


def _date_clause(date_range: DateRange | None, params: list[Any]) -> str:
    """SQL fragment restricting s.started_at to the range (UTC dates)."""
    if date_range is None:
        return ""
    sql = ""
    if date_range.after:
        sql += " AND substr(s.started_at, 1, 10) >= ?"
        params.append(date_range.after.isoformat())
    if date_range.before:
        sql += " AND substr(s.started_at, 1, 10) <= ?"
        params.append(date_range.before.isoformat())
    return sql


_SEARCHABLE_SQL = "(" + ", ".join(f"'{s.value}'" for s in SEARCHABLE) + ")"


class IndexStore:
    """The persisted index: sessions, their exchanges and embeddings.

    Every write of a session's content goes through ``put``, which replaces the
    session row and all of its exchanges in one transaction.
    """

    def __init__(self, db_path: Path, migrate: bool = True) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.enable_load_extension(True)
            sqlite_vec.load(self.conn)
            self.conn.enable_load_extension(False)
            self.conn.create_function("casefold", 1, _casefold, deterministic=True)
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open index at {db_path}: {e}") from e

        version = self.schema_version()
        if version > SCHEMA_VERSION:
            self.conn.close()
            raise SchemaVersionError(version, SCHEMA_VERSION)
        # A brand-new database is always brought up to date
        if migrate or (version == 0 and not self._has_table("sessions")):
            self.migrate()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "IndexStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; takes the database write lock up front."""
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StoreError(f"Cannot start write transaction: {e}") from e
        try:
            yield self.conn
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        else:
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise StoreError(f"Commit failed: {e}") from e

    # Schema

    def _has_table(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def schema_version(self) -> int:
        if not self._has_table("metadata"):
            return 0
        value = self.get_metadata("schema_version")
        return int(value) if value else 0

    def migrate(self) -> int | None:
        """Apply pending migrations. Returns the version migrated from, or None."""
        current = self.schema_version()
        if current > SCHEMA_VERSION:
            raise SchemaVersionError(current, SCHEMA_VERSION)
        if current == SCHEMA_VERSION:
            return None

        try:
            with self.transaction() as conn:
                for version in range(current, SCHEMA_VERSION):
                    logger.info("Migrating index schema %d -> %d", version, version + 1)
                    MIGRATIONS[version](conn)
                conn.execute(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Schema migration failed: {e}") from e
        return current

    def reset(self) -> None:
        """Drop all index data and recreate an empty, current schema."""
        with self.transaction() as conn:
            conn.execute("DROP TABLE IF EXISTS exchanges")
            conn.execute("DROP TABLE IF EXISTS sessions")
            conn.execute("DROP TABLE IF EXISTS metadata")
        self.migrate()

    # Metadata

    def set_metadata(self, key: str, value: str) -> None:
        """Set a metadata value."""
        self.conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, value),
        )

    def get_metadata(self, key: str) -> str | None:
        """Get a metadata value."""
        row = self.conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    # Writes

    def put(self, entry: IndexEntry) -> None:
        """Atomically replace a session and all of its exchanges."""
        session = entry.session
        try:
            with self.transaction() as conn:
                self._upsert_session(conn, session)
                conn.execute("DELETE FROM exchanges WHERE session_id = ?", (session.id,))
                for exchange in entry.exchanges:
                    conn.execute(
                        """
                        INSERT INTO exchanges
                            (session_id, ordinal, line_start, line_end, text, embedding)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            session.id,
                            exchange.ordinal,
                            exchange.line_start,
                            exchange.line_end,
                            exchange.text,
                            serialize_embedding(exchange.embedding),
                        ),
                    )
        except (sqlite3.Error, struct.error) as e:
            raise StoreError(f"Failed to write session {session.id}: {e}") from e

    def _upsert_session(self, conn: sqlite3.Connection, session: Session) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO sessions (
                id, project, path, started_at, last_modified, file_size, content_hash,
                index_status, summary, summary_status, error, indexed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.project,
                str(session.path),
                _ts(session.started_at),
                _ts(session.last_modified),
                session.file_size,
                session.content_hash,
                session.index_status.value,
                session.summary,
                session.summary_status.value,
                session.error,
                _ts(session.indexed_at) if session.indexed_at else None,
            ),
        )

    def mark_failed(self, session: Session, reason: str) -> None:
        """Record a failed indexing attempt; any previous exchanges are dropped."""
        session.index_status = IndexStatus.FAILED
        session.error = reason
        self.put(IndexEntry(session=session, exchanges=[]))

    def set_status(self, session_id: str, status: IndexStatus) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET index_status = ? WHERE id = ?",
                (status.value, session_id),
            )

    def update_file_stat(self, session_id: str, last_modified: datetime, file_size: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET last_modified = ?, file_size = ? WHERE id = ?",
                (_ts(last_modified), file_size, session_id),
            )

    def delete(self, session_id: str) -> None:
        """Delete a session and its exchanges."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM exchanges WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    # Reads

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            project=row["project"],
            path=Path(row["path"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            last_modified=datetime.fromisoformat(row["last_modified"]),
            file_size=row["file_size"],
            content_hash=row["content_hash"],
            index_status=IndexStatus(row["index_status"]),
            summary=row["summary"],
            summary_status=SummaryStatus(row["summary_status"]),
            error=row["error"] if "error" in row.keys() else None,
            indexed_at=_parse_ts(row["indexed_at"]) if "indexed_at" in row.keys() else None,
        )

    @staticmethod
    def _row_to_exchange(row: sqlite3.Row) -> Exchange:
        return Exchange(
            session_id=row["session_id"],
            ordinal=row["ordinal"],
            line_start=row["line_start"],
            line_end=row["line_end"],
            text=row["text"],
            embedding=deserialize_embedding(row["embedding"]),
        )

    def get_session(self, session_id: str) -> Session | None:
        """Get a session's metadata by ID."""
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def get(self, session_id: str) -> IndexEntry | None:
        """Get a session with all of its exchanges."""
        session = self.get_session(session_id)
        if session is None:
            return None
        rows = self.conn.execute(
            "SELECT * FROM exchanges WHERE session_id = ? ORDER BY ordinal",
            (session_id,),
        ).fetchall()
        return IndexEntry(session=session, exchanges=[self._row_to_exchange(r) for r in rows])

    def scan_all(self) -> list[Session]:
        """All sessions, most recently modified first."""
        rows = self.conn.execute(
            "SELECT * FROM sessions ORDER BY last_modified DESC, id"
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def missing_embedding_counts(self) -> dict[str, int]:
        """Number of exchanges without an embedding, per session that has any."""
        rows = self.conn.execute("""
            SELECT session_id, COUNT(*) AS missing
            FROM exchanges
            WHERE embedding IS NULL
            GROUP BY session_id
        """).fetchall()
        return {row["session_id"]: row["missing"] for row in rows}

    # Search

    def vector_search(
        self,
        embedding: list[float],
        limit: int,
        date_range: DateRange | None = None,
        metric: str = "cosine",
        per_session: bool = False,
    ) -> list[SearchResult]:
        """Nearest exchanges to ``embedding``.

        One result per exchange, or with ``per_session`` only the nearest
        exchange of each session.
        """
        distance_fn = DISTANCE_FUNCTIONS[metric]
        params: list[Any] = [sqlite_vec.serialize_float32(embedding)]
        sql = f"""
            SELECT s.*, e.session_id, e.ordinal, e.line_start, e.line_end, e.text, e.embedding,
                   {distance_fn}(e.embedding, ?) AS distance
            FROM exchanges e
            JOIN sessions s ON s.id = e.session_id
            WHERE e.embedding IS NOT NULL AND s.index_status IN {_SEARCHABLE_SQL}
        """
        sql += _date_clause(date_range, params)
        if per_session:
            sql = _first_per_session(sql, "distance ASC, ordinal ASC")
        sql += " ORDER BY distance ASC, started_at DESC, ordinal ASC LIMIT ?"
        params.append(limit)

        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Vector search failed: {e}") from e

        results = []
        for row in rows:
            distance = row["distance"]
            if metric == "cosine":
                similarity = 1.0 - distance
            else:
                similarity = 1.0 / (1.0 + distance)
            results.append(
                SearchResult(
                    session=self._row_to_session(row),
                    exchange=self._row_to_exchange(row),
                    similarity=similarity,
                    score=similarity,
                )
            )
        return results

    def text_search(
        self,
        pattern: str,
        limit: int,
        date_range: DateRange | None = None,
        per_session: bool = False,
    ) -> list[SearchResult]:
        """Case-insensitive literal substring match over exchange text and summaries.

        Case is folded with ``str.casefold``, so non-ASCII text matches too. A
        session matched only through its summary is reported at its first
        exchange. With ``per_session`` only the first matching exchange of each
        session is returned.
        """
        needle = pattern.casefold()

        params: list[Any] = [needle]
        exchange_sql = f"""
            SELECT s.*, e.session_id, e.ordinal, e.line_start, e.line_end, e.text, e.embedding
            FROM exchanges e
            JOIN sessions s ON s.id = e.session_id
            WHERE instr(casefold(e.text), ?) > 0 AND s.index_status IN {_SEARCHABLE_SQL}
        """
        exchange_sql += _date_clause(date_range, params)
        if per_session:
            exchange_sql = _first_per_session(exchange_sql, "ordinal ASC")
        exchange_sql += " ORDER BY started_at DESC, ordinal ASC LIMIT ?"
        params.append(limit)

        summary_params: list[Any] = [needle, needle]
        summary_sql = f"""
            SELECT s.*, e.session_id, e.ordinal, e.line_start, e.line_end, e.text, e.embedding
            FROM sessions s
            JOIN exchanges e ON e.session_id = s.id AND e.ordinal = (
                SELECT MIN(ordinal) FROM exchanges WHERE session_id = s.id
            )
            WHERE instr(casefold(s.summary), ?) > 0 AND s.index_status IN {_SEARCHABLE_SQL}
              AND NOT EXISTS (
                SELECT 1 FROM exchanges x
                WHERE x.session_id = s.id AND instr(casefold(x.text), ?) > 0
              )
        """
        summary_sql += _date_clause(date_range, summary_params)
        summary_sql += " ORDER BY s.started_at DESC LIMIT ?"
        summary_params.append(limit)

        try:
            rows = self.conn.execute(exchange_sql, params).fetchall()
            rows += self.conn.execute(summary_sql, summary_params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Text search failed: {e}") from e

        results = [
            SearchResult(session=self._row_to_session(row), exchange=self._row_to_exchange(row))
            for row in rows
        ]
        results.sort(key=lambda r: (_ts(r.session.started_at), -r.exchange.ordinal), reverse=True)
        return results[:limit]

    # Statistics

    def get_index_stats(self) -> dict[str, Any]:
        """Get index statistics."""
        status_counts = {status.value: 0 for status in IndexStatus}
        for row in self.conn.execute(
            "SELECT index_status, COUNT(*) AS n FROM sessions GROUP BY index_status"
        ):
            status_counts[row["index_status"]] = row["n"]
        exchange_count = self.conn.execute("SELECT COUNT(*) FROM exchanges").fetchone()[0]

        return {
            "session_count": sum(status_counts.values()),
            "status_counts": status_counts,
            "exchange_count": exchange_count,
            "index_path": str(self.db_path),
            "last_indexed": self.get_metadata("last_indexed"),
            "schema_version": self.schema_version(),
        }

    def get_detailed_stats(self) -> dict[str, Any]:
        """Get detailed index statistics with per-project breakdown."""
        project_stats = self.conn.execute("""
            SELECT
                s.project,
                COUNT(DISTINCT s.id) as sessions,
                COUNT(e.ordinal) as exchanges,
                MIN(s.started_at) as oldest,
                MAX(s.started_at) as newest
            FROM sessions s
            LEFT JOIN exchanges e ON s.id = e.session_id
            GROUP BY s.project
            ORDER BY COUNT(e.ordinal) DESC
        """).fetchall()

        index_size = self.db_path.stat().st_size if self.db_path.exists() else 0

        return {
            "projects": [dict(row) for row in project_stats],
            "index_size_bytes": index_size,
            "index_size_human": _format_size(index_size),
        }


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
