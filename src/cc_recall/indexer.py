"""Transcript indexing pipeline."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from cc_recall.config import Config
from cc_recall.embeddings import EnrichmentProvider
from cc_recall.errors import CCRecallError, EnrichmentError, StoreError
from cc_recall.exchanges import create_exchanges
from cc_recall.models import (
    NEEDS_INDEXING,
    IndexEntry,
    IndexReport,
    IndexStatus,
    Session,
    SessionFailure,
    SummaryStatus,
)
from cc_recall.storage import IndexStore
from cc_recall.transcripts import TranscriptArchive, TranscriptFile, parse_transcript

logger = logging.getLogger(__name__)


@dataclass
class IndexJob:
    """A transcript queued for enrichment."""

    transcript: TranscriptFile
    previous: Session | None = None
    content_hash: str | None = None


class IndexingPipeline:
    """Discovers transcripts that need indexing, enriches them and commits the results.

    Up to ``config.concurrency`` sessions are enriched at once on a thread pool.
    Workers only parse and call the enrichment provider; every store write
    happens on the calling thread, one ``put`` per session.
    """

    def __init__(
        self,
        config: Config,
        store: IndexStore,
        provider: EnrichmentProvider,
        archive: TranscriptArchive | None = None,
        console: Console | None = None,
        show_progress: bool = False,
    ) -> None:
        self.config = config
        self.store = store
        self.provider = provider
        self.archive = archive or TranscriptArchive(config.archive_dir)
        self.console = console or Console()
        self.show_progress = show_progress

    # Entry points

    def index_all(self, dry_run: bool = False) -> IndexReport:
        """Index every session not already indexed with a matching content hash."""
        jobs, up_to_date = self._plan(full_hash=True, dry_run=dry_run)
        return self._execute(jobs, up_to_date, dry_run)

    def index_cleanup(self, dry_run: bool = False) -> IndexReport:
        """Index new, unindexed, stale and failed sessions.

        Indexed sessions are only re-hashed when their size or mtime changed.
        """
        jobs, up_to_date = self._plan(full_hash=False, dry_run=dry_run)
        return self._execute(jobs, up_to_date, dry_run)

    def index_session(self, session_id: str) -> IndexReport:
        """Index exactly one session, regardless of its current status."""
        transcript = self.archive.find(session_id)
        if transcript is None:
            reason = f"No transcript found for session {session_id} in {self.archive.root}"
            logger.error(reason)
            return IndexReport(failed=[SessionFailure(session_id, None, reason)])
        job = IndexJob(transcript=transcript, previous=self.store.get_session(session_id))
        return self._execute([job], 0, dry_run=False)

    # Planning

    def _plan(self, full_hash: bool, dry_run: bool = False) -> tuple[list[IndexJob], int]:
        """Decide which transcripts need indexing. Writes nothing when ``dry_run`` is set."""
        transcripts = self.archive.discover()
        logger.info("Found %d transcripts in %s", len(transcripts), self.archive.root)

        jobs: list[IndexJob] = []
        up_to_date = 0
        for transcript in transcripts:
            previous = self.store.get_session(transcript.session_id)
            if previous is None or previous.index_status in NEEDS_INDEXING:
                jobs.append(IndexJob(transcript=transcript, previous=previous))
                continue

            # Indexed session: is the content still the same?
            stat_changed = (
                previous.file_size != transcript.file_size
                or previous.last_modified != transcript.last_modified
            )
            if not full_hash and not stat_changed:
                up_to_date += 1
                continue

            try:
                content_hash = transcript.content_hash()
            except CCRecallError as e:
                logger.warning("Cannot hash %s: %s", transcript.path, e)
                jobs.append(IndexJob(transcript=transcript, previous=previous))
                continue

            if content_hash == previous.content_hash:
                # Touched but unchanged; remember the new stat so the next cleanup skips it
                if not dry_run:
                    self.store.update_file_stat(
                        transcript.session_id, transcript.last_modified, transcript.file_size
                    )
                up_to_date += 1
                continue

            logger.info("Session %s changed since it was indexed", transcript.session_id)
            if not dry_run:
                self.store.set_status(transcript.session_id, IndexStatus.STALE)
            previous.index_status = IndexStatus.STALE
            jobs.append(
                IndexJob(transcript=transcript, previous=previous, content_hash=content_hash)
            )

        return jobs, up_to_date

    # Execution

    def _execute(self, jobs: list[IndexJob], up_to_date: int, dry_run: bool) -> IndexReport:
        report = IndexReport(up_to_date=up_to_date)
        if not jobs:
            return report

        if dry_run:
            self._print_dry_run(jobs)
            return report

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=self.console,
            disable=not self.show_progress,
        ) as progress:
            task = progress.add_task("Indexing sessions...", total=len(jobs))
            pool = ThreadPoolExecutor(
                max_workers=self.config.concurrency, thread_name_prefix="cc-recall-enrich"
            )
            futures: dict[Future[IndexEntry], IndexJob] = {
                pool.submit(self.enrich, job): job for job in jobs
            }
            try:
                for future in as_completed(futures):
                    self._commit(futures[future], future, report)
                    progress.advance(task)
            except KeyboardInterrupt:
                # Sessions not yet committed stay as they were for the next run
                remaining = len(jobs) - len(report.indexed) - len(report.failed)
                logger.warning("Interrupted; %d sessions left for the next run", remaining)
                report.interrupted = True
            finally:
                pool.shutdown(wait=True, cancel_futures=True)

        if report.indexed:
            self.store.set_metadata("last_indexed", datetime.now(tz=timezone.utc).isoformat())
        return report

    def enrich(self, job: IndexJob) -> IndexEntry:
        """Parse a transcript and produce its embeddings and summary.

        Runs on a worker thread; must not touch the store.
        """
        transcript = job.transcript
        content_hash = job.content_hash or transcript.content_hash()
        parsed = parse_transcript(transcript)
        exchanges = create_exchanges(parsed.messages, transcript.session_id)

        session = Session(
            id=transcript.session_id,
            project=transcript.project,
            path=transcript.path,
            started_at=parsed.started_at,
            last_modified=transcript.last_modified,
            file_size=transcript.file_size,
            content_hash=content_hash,
            index_status=IndexStatus.INDEXED,
            summary_status=SummaryStatus.SKIPPED,
        )

        if exchanges:
            embeddings = self.provider.embed([e.text for e in exchanges])
            _check_embeddings(embeddings, len(exchanges))
            for exchange, embedding in zip(exchanges, embeddings, strict=True):
                exchange.embedding = [float(x) for x in embedding]

            if self.config.summaries:
                summary = self.provider.summarize(session, exchanges)
                if not summary or not summary.strip():
                    raise EnrichmentError("Provider returned an empty summary")
                session.summary = summary.strip()
                session.summary_status = SummaryStatus.PRESENT

        session.indexed_at = datetime.now(tz=timezone.utc)
        return IndexEntry(session=session, exchanges=exchanges)

    def _commit(self, job: IndexJob, future: "Future[IndexEntry]", report: IndexReport) -> None:
        transcript = job.transcript
        try:
            entry = future.result()
            self.store.put(entry)
        except CCRecallError as e:
            self._record_failure(job, str(e), report)
        except Exception as e:
            logger.debug("Unexpected error indexing %s", transcript.session_id, exc_info=True)
            self._record_failure(job, f"{type(e).__name__}: {e}", report)
        else:
            logger.info(
                "Indexed session %s (%d exchanges)", transcript.session_id, len(entry.exchanges)
            )
            report.indexed.append(transcript.session_id)

    def _record_failure(self, job: IndexJob, reason: str, report: IndexReport) -> None:
        transcript = job.transcript
        logger.error(
            "Failed to index session %s (%s): %s", transcript.session_id, transcript.path, reason
        )
        report.failed.append(SessionFailure(transcript.session_id, transcript.path, reason))

        previous = job.previous
        failed = Session(
            id=transcript.session_id,
            project=transcript.project,
            path=transcript.path,
            started_at=previous.started_at if previous else transcript.last_modified,
            last_modified=transcript.last_modified,
            file_size=transcript.file_size,
            content_hash=job.content_hash or (previous.content_hash if previous else ""),
        )
        try:
            self.store.mark_failed(failed, reason)
        except StoreError as e:
            logger.error("Could not record failure for %s: %s", transcript.session_id, e)

    def _print_dry_run(self, jobs: list[IndexJob]) -> None:
        self.console.print(f"[yellow]Dry run - would index {len(jobs)} sessions:[/yellow]")
        # Group by project for cleaner output
        by_project: dict[str, int] = {}
        for job in jobs:
            by_project[job.transcript.project] = by_project.get(job.transcript.project, 0) + 1
        for project, count in sorted(by_project.items()):
            self.console.print(f"  [cyan]{project}[/cyan]: {count} sessions")


def _check_embeddings(embeddings: list[list[float]], expected: int) -> None:
    if len(embeddings) != expected:
        raise EnrichmentError(
            f"Provider returned {len(embeddings)} embeddings for {expected} exchanges"
        )
    dims = {len(e) for e in embeddings}
    if 0 in dims or len(dims) != 1:
        raise EnrichmentError(f"Provider returned malformed embeddings (dimensions {sorted(dims)})")
