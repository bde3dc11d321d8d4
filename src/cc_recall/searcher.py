"""Search over the conversation index: vector similarity, exact text, or both."""

import logging
import re
from datetime import date, datetime

from rich.console import Console
from rich.markup import escape

from cc_recall.config import Config
from cc_recall.embeddings import EnrichmentProvider
from cc_recall.errors import EnrichmentError
from cc_recall.models import DateRange, SearchResult
from cc_recall.storage import IndexStore

logger = logging.getLogger(__name__)

SEARCH_MODES = ("vector", "text", "both")

EXCERPT_CHARS = 160


def parse_date(value: str | None) -> date | None:
    """Parse a YYYY-MM-DD date; None or empty means an open bound."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from None


def _newest_first(result: SearchResult) -> float:
    return result.session.started_at.timestamp()


class SearchEngine:
    """Runs queries against an IndexStore.

    Only vector search needs the enrichment provider (to embed the query).
    """

    def __init__(
        self,
        config: Config,
        store: IndexStore,
        provider: EnrichmentProvider | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.provider = provider

    def search(
        self,
        query: str,
        mode: str = "vector",
        limit: int = 10,
        date_range: DateRange | None = None,
    ) -> list[SearchResult]:
        if mode == "vector":
            return self.search_vector(query, limit, date_range)
        if mode == "text":
            return self.search_text(query, limit, date_range)
        if mode == "both":
            return self.search_both(query, limit, date_range)
        raise ValueError(
            f"Unknown search mode {mode!r}, expected one of {', '.join(SEARCH_MODES)}"
        )

    def embed_query(self, query: str) -> list[float]:
        if self.provider is None:
            raise EnrichmentError("Vector search needs an embedding provider")
        embeddings = self.provider.embed([query])
        if len(embeddings) != 1 or not embeddings[0]:
            raise EnrichmentError("Provider returned no embedding for the query")
        return [float(x) for x in embeddings[0]]

    def search_vector(
        self,
        query: str,
        limit: int = 10,
        date_range: DateRange | None = None,
        per_session: bool = False,
    ) -> list[SearchResult]:
        """Exchanges most similar to the query, best first; ties go to newer sessions."""
        embedding = self.embed_query(query)
        results = self.store.vector_search(
            embedding,
            limit,
            date_range,
            metric=self.config.similarity_metric,
            per_session=per_session,
        )
        results.sort(key=lambda r: (r.score, _newest_first(r)), reverse=True)
        return results[:limit]

    def search_text(
        self,
        query: str,
        limit: int = 10,
        date_range: DateRange | None = None,
        per_session: bool = False,
    ) -> list[SearchResult]:
        """Exchanges containing the literal query (case-insensitive), newest first."""
        results = self.store.text_search(query, limit, date_range, per_session=per_session)
        for result in results:
            result.score = self.config.text_only_score
        results.sort(key=_newest_first, reverse=True)
        return results[:limit]

    def search_both(
        self, query: str, limit: int = 10, date_range: DateRange | None = None
    ) -> list[SearchResult]:
        """Union of vector and text hits, one result per session.

        Vector hits keep their similarity (plus ``both_bonus`` when the text
        search found the session too); text-only hits get ``text_only_score``.
        On equal scores vector hits come first, then newer sessions.
        """
        # One candidate per session from each side
        vector_hits = self.search_vector(query, limit, date_range, per_session=True)
        text_hits = self.search_text(query, limit, date_range, per_session=True)
        ranked = merge_results(
            vector_hits,
            text_hits,
            text_only_score=self.config.text_only_score,
            both_bonus=self.config.both_bonus,
        )
        logger.debug(
            "Merged %d vector and %d text hits into %d sessions",
            len(vector_hits),
            len(text_hits),
            len(ranked),
        )
        return ranked[:limit]


def merge_results(
    vector_hits: list[SearchResult],
    text_hits: list[SearchResult],
    text_only_score: float,
    both_bonus: float = 0.0,
) -> list[SearchResult]:
    """Merge vector and text hits into one ranked result per session."""
    text_sessions = {r.session.id for r in text_hits}

    merged: dict[str, SearchResult] = {}
    for result in sorted(vector_hits, key=lambda r: r.score, reverse=True):
        # Keep the best exchange per session
        if result.session.id in merged:
            continue
        if result.session.id in text_sessions:
            result.score = (result.similarity or 0.0) + both_bonus
        merged[result.session.id] = result

    for result in text_hits:
        if result.session.id not in merged:
            result.score = text_only_score
            merged[result.session.id] = result

    return sorted(
        merged.values(),
        key=lambda r: (r.score, r.similarity is not None, _newest_first(r)),
        reverse=True,
    )


def make_excerpt(text: str, query: str | None = None, width: int = EXCERPT_CHARS) -> str:
    """A single-line excerpt: around the first literal match, else the opening request."""
    flat = re.sub(r"\s+", " ", text).strip()
    if query:
        idx = flat.lower().find(query.lower())
        if idx >= 0:
            start = max(0, idx - width // 3)
            snippet = flat[start : start + width]
            prefix = "..." if start > 0 else ""
            suffix = "..." if start + width < len(flat) else ""
            return f"{prefix}{snippet}{suffix}"

    if flat.startswith("User: "):
        flat = flat[len("User: ") :]
    if len(flat) > width:
        return flat[:width].rstrip() + "..."
    return flat


def format_human_output(
    results: list[SearchResult], query: str, mode: str, console: Console
) -> None:
    """Format results for human-readable output."""
    if not results:
        console.print("[yellow]No results found. Try a different query.[/yellow]")
        return

    for i, result in enumerate(results, 1):
        session = result.session
        console.print(
            f"[bold cyan]{i}.[/bold cyan] [green]\\[{escape(session.project)}, "
            f"{session.started_at.date().isoformat()}][/green]"
        )
        if session.summary:
            console.print(f"   {escape(session.summary)}")

        literal = query if result.similarity is None else None
        excerpt = escape(make_excerpt(result.exchange.text, literal))
        if result.similarity is not None:
            pct = max(0, min(100, round(result.similarity * 100)))
            console.print(f'   [bold]{pct}% match:[/bold] "{excerpt}"')
        else:
            console.print(f'   [bold]text match:[/bold] "{excerpt}"')
        console.print(f"   [dim]{escape(result.locator)}[/dim]")
        console.print()

    console.print("─" * 50)
    console.print(f"Found {len(results)} results ({mode} search)")


def format_json_output(
    results: list[SearchResult], query: str, mode: str, console: Console
) -> None:
    """Format results as JSON for programmatic use."""
    output = {
        "results": [
            {
                "rank": i + 1,
                "project": result.session.project,
                "session_id": result.session.id,
                "date": result.session.started_at.date().isoformat(),
                "summary": result.session.summary,
                "similarity": (
                    round(result.similarity, 4) if result.similarity is not None else None
                ),
                "session_path": str(result.session.path),
                "line_start": result.exchange.line_start,
                "line_end": result.exchange.line_end,
                "excerpt": make_excerpt(
                    result.exchange.text, query if result.similarity is None else None
                ),
            }
            for i, result in enumerate(results)
        ],
        "query": query,
        "mode": mode,
        "total_results": len(results),
    }
    console.print_json(data=output)
