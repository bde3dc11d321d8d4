"""CLI for cc-recall."""

import contextlib
import os
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from cc_recall import __version__
from cc_recall.config import MAX_CONCURRENCY, MIN_CONCURRENCY, SESSION_ID_ENV, Config
from cc_recall.errors import CCRecallError
from cc_recall.log import setup_file_logging, setup_logging
from cc_recall.models import IndexReport

app = typer.Typer(
    name="cc-recall",
    help="Index and search archived Claude Code conversations.",
    no_args_is_help=True,
)
console = Console()

Concurrency = Annotated[
    int,
    typer.Option(
        "--concurrency",
        "-c",
        min=MIN_CONCURRENCY,
        max=MAX_CONCURRENCY,
        help="Sessions enriched in parallel",
    ),
]
NoSummaries = Annotated[
    bool, typer.Option("--no-summaries", help="Skip AI summaries (free, embeddings only)")
]
DryRun = Annotated[bool, typer.Option("--dry-run", "-d", help="Show what would be indexed")]


def version_callback(value: bool) -> None:
    if value:
        console.print(f"cc-recall {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-V", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Index and search archived Claude Code conversations."""
    setup_logging(verbose)


@contextlib.contextmanager
def handle_errors() -> Iterator[None]:
    """Turn cc-recall errors into a red message and exit status 1."""
    try:
        yield
    except CCRecallError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e


def load_config(**overrides: object) -> Config:
    with handle_errors():
        return Config.from_env(**overrides)


def open_store(config: Config, migrate: bool = True):
    from cc_recall.storage import IndexStore

    with handle_errors():
        return IndexStore(config.db_path, migrate=migrate)


def make_pipeline(config: Config, store):
    from cc_recall.embeddings import DefaultEnrichment
    from cc_recall.indexer import IndexingPipeline

    return IndexingPipeline(
        config,
        store,
        DefaultEnrichment(config),
        console=console,
        show_progress=console.is_terminal,
    )


def finish_index(report: IndexReport) -> None:
    """Print an indexing summary; exit non-zero if any session failed."""
    if report.indexed:
        console.print(f"[green]Indexed {len(report.indexed)} sessions[/green]")
    if report.up_to_date:
        console.print(f"{report.up_to_date} sessions already up to date")
    if not report.indexed and not report.failed and not report.interrupted:
        console.print("[green]Index is up to date[/green]")
    for failure in report.failed:
        where = f" ({failure.path})" if failure.path else ""
        console.print(f"[red]Failed {failure.session_id}{where}: {failure.reason}[/red]")
    if report.interrupted:
        console.print("[yellow]Interrupted; remaining sessions will be indexed next run[/yellow]")
    if not report.ok:
        raise typer.Exit(1)


@app.command("index-all")
def index_all(
    concurrency: Concurrency = 1,
    no_summaries: NoSummaries = False,
    dry_run: DryRun = False,
) -> None:
    """Index every conversation that is new or changed."""
    config = load_config(concurrency=concurrency, summaries=not no_summaries)
    with open_store(config) as store, handle_errors():
        report = make_pipeline(config, store).index_all(dry_run=dry_run)
    finish_index(report)


@app.command("index-cleanup")
def index_cleanup(
    concurrency: Concurrency = 1,
    no_summaries: NoSummaries = False,
    dry_run: DryRun = False,
) -> None:
    """Index only unindexed, stale and failed conversations (fast, cheap)."""
    config = load_config(concurrency=concurrency, summaries=not no_summaries)
    with open_store(config) as store, handle_errors():
        report = make_pipeline(config, store).index_cleanup(dry_run=dry_run)
    finish_index(report)


@app.command("index-session")
def index_session(
    session_id: Annotated[str, typer.Argument(help="Session ID (transcript file name)")],
    concurrency: Concurrency = 1,
    no_summaries: NoSummaries = False,
    log_file: Annotated[
        Path | None, typer.Option("--log-file", help="Append logs to this file")
    ] = None,
) -> None:
    """Index a single conversation (used by the post-session hook)."""
    if log_file is not None:
        setup_file_logging(log_file)
    config = load_config(concurrency=concurrency, summaries=not no_summaries)
    with open_store(config) as store, handle_errors():
        report = make_pipeline(config, store).index_session(session_id)
    finish_index(report)


@app.command()
def verify() -> None:
    """Check index health (exit status 1 if issues are found)."""
    from cc_recall.integrity import IntegrityManager

    config = load_config()
    if not config.db_path.exists():
        console.print(f"[yellow]No index found at {config.db_path}; nothing to verify.[/yellow]")
        return

    with open_store(config, migrate=False) as store, handle_errors():
        report = IntegrityManager(store).verify()

    console.print(
        f"Schema version: {report.schema_version} "
        f"(expected {report.expected_schema_version})"
    )
    sections = [
        ("Orphaned (transcript deleted)", report.orphaned),
        ("Corrupted (missing embeddings or summary)", report.corrupted),
        ("Stale (transcript changed since indexing)", report.stale),
    ]
    for title, session_ids in sections:
        style = "red" if session_ids else "green"
        console.print(f"[{style}]{title}: {len(session_ids)}[/{style}]")
        for session_id in session_ids:
            console.print(f"  {session_id}")
    if report.failed:
        console.print(
            f"[yellow]Failed sessions (retried by index-cleanup): {len(report.failed)}[/yellow]"
        )

    if report.has_issues:
        console.print("[red]Issues found. Run 'cc-recall repair' to fix them.[/red]")
        raise typer.Exit(1)
    console.print("[green]Index is healthy[/green]")


@app.command()
def repair() -> None:
    """Fix issues found by verify."""
    from cc_recall.integrity import IntegrityManager

    config = load_config()
    with open_store(config, migrate=False) as store, handle_errors():
        report = IntegrityManager(store).repair()

    if report.migrated_from is not None:
        console.print(f"Migrated schema from version {report.migrated_from}")
    for session_id in report.deleted:
        console.print(f"Deleted orphaned session {session_id}")
    for session_id in report.reset:
        console.print(f"Marked {session_id} stale for re-indexing")
    for problem in report.unrepairable:
        console.print(f"[red]Unrepairable: {problem}[/red]")

    if not report.changed and not report.unrepairable:
        console.print("[green]Nothing to repair[/green]")
    elif report.reset:
        console.print("Run 'cc-recall index-cleanup' to re-index stale sessions.")
    if report.unrepairable:
        raise typer.Exit(1)


def confirm_interactively(prompt: str) -> bool:
    """Ask on the terminal; never consents when stdin is not a TTY."""
    if not sys.stdin.isatty():
        console.print("[red]Refusing to rebuild without an interactive terminal.[/red]")
        return False
    return typer.confirm(prompt, default=False)


@app.command()
def rebuild(
    concurrency: Concurrency = 1,
    no_summaries: NoSummaries = False,
) -> None:
    """Delete the index and re-index everything (asks for confirmation)."""
    from cc_recall.integrity import IntegrityManager

    config = load_config(concurrency=concurrency, summaries=not no_summaries)
    with open_store(config) as store, handle_errors():
        manager = IntegrityManager(store, confirm=confirm_interactively)
        report = manager.rebuild(make_pipeline(config, store))
    finish_index(report)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query")],
    mode: Annotated[
        str, typer.Option("--mode", "-m", help="vector (semantic), text (exact) or both")
    ] = "vector",
    text: Annotated[bool, typer.Option("--text", help="Shortcut for --mode text")] = False,
    both: Annotated[bool, typer.Option("--both", help="Shortcut for --mode both")] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Number of results")] = 10,
    after: Annotated[
        str | None, typer.Option("--after", help="Only conversations on/after YYYY-MM-DD")
    ] = None,
    before: Annotated[
        str | None, typer.Option("--before", help="Only conversations on/before YYYY-MM-DD")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Search indexed conversations."""
    from cc_recall.embeddings import DefaultEnrichment
    from cc_recall.models import DateRange
    from cc_recall.searcher import (
        SEARCH_MODES,
        SearchEngine,
        format_human_output,
        format_json_output,
        parse_date,
    )

    if not query.strip():
        console.print("[red]Error: Query required[/red]")
        raise typer.Exit(1)
    if text:
        mode = "text"
    elif both:
        mode = "both"
    if mode not in SEARCH_MODES:
        raise typer.BadParameter(
            f"expected one of {', '.join(SEARCH_MODES)}", param_hint="--mode"
        )
    try:
        date_range = DateRange(after=parse_date(after), before=parse_date(before))
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    config = load_config()
    if not config.db_path.exists():
        console.print("[yellow]No index found. Run 'cc-recall index-cleanup' first.[/yellow]")
        raise typer.Exit(1)

    with open_store(config) as store, handle_errors():
        engine = SearchEngine(config, store, DefaultEnrichment(config))
        results = engine.search(query, mode=mode, limit=limit, date_range=date_range)

    if json_output:
        format_json_output(results, query, mode, console)
    else:
        format_human_output(results, query, mode, console)


@app.command()
def status(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show detailed per-project stats")
    ] = False,
) -> None:
    """Show index statistics."""
    config = load_config()
    with open_store(config) as store:
        stats = store.get_index_stats()
        detailed = store.get_detailed_stats() if verbose else None

    console.print(f"Sessions indexed: {stats['status_counts']['indexed']}")
    for status_name in ("stale", "failed", "unindexed"):
        count = stats["status_counts"][status_name]
        if count:
            console.print(f"Sessions {status_name}: {count}")
    console.print(f"Exchanges indexed: {stats['exchange_count']}")
    console.print(f"Index path: {stats['index_path']}")
    console.print(f"Archive path: {config.archive_dir}")
    if stats["last_indexed"]:
        console.print(f"Last indexed: {stats['last_indexed']}")

    if detailed and stats["session_count"] > 0:
        console.print(f"\nIndex size: {detailed['index_size_human']}")
        console.print("\n[bold]Per-project breakdown:[/bold]")
        for proj in detailed["projects"]:
            console.print(
                f"  [cyan]{proj['project']}[/cyan]: "
                f"{proj['sessions']} sessions, {proj['exchanges']} exchanges"
            )


@app.command()
def trigger(
    session_id: Annotated[
        str | None, typer.Argument(help=f"Session ID (defaults to ${SESSION_ID_ENV})")
    ] = None,
    no_summaries: NoSummaries = False,
) -> None:
    """Index a session in the background and return immediately."""
    from cc_recall.trigger import submit_session_index

    session_id = session_id or os.environ.get(SESSION_ID_ENV)
    if not session_id:
        console.print(f"[yellow]No session ID given and ${SESSION_ID_ENV} is not set[/yellow]")
        raise typer.Exit(1)

    config = load_config(summaries=not no_summaries)
    try:
        submission = submit_session_index(session_id, config)
    except OSError as e:
        console.print(f"[red]Could not start background indexing: {e}[/red]")
        raise typer.Exit(1) from e
    console.print(f"Indexing {session_id} in the background (log: {submission.log_file})")


if __name__ == "__main__":
    app()
