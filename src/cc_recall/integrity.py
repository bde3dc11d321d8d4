"""Index health checks: verify, repair and rebuild."""

import logging
from collections.abc import Callable

from cc_recall.errors import RebuildRefused, StoreError, TranscriptError
from cc_recall.indexer import IndexingPipeline
from cc_recall.models import IndexReport, IndexStatus, RepairReport, SummaryStatus, VerifyReport
from cc_recall.storage import SCHEMA_VERSION, IndexStore
from cc_recall.transcripts import hash_file

logger = logging.getLogger(__name__)

# Asked before destructive operations; returns True only on explicit consent
Confirmer = Callable[[str], bool]

REBUILD_PROMPT = "This will DELETE the entire index and re-index everything. Are you sure?"


def refuse(prompt: str) -> bool:
    """Confirmer for non-interactive contexts."""
    return False


class IntegrityManager:
    """Finds and fixes inconsistencies between the index and the transcript archive."""

    def __init__(self, store: IndexStore, confirm: Confirmer = refuse) -> None:
        self.store = store
        self.confirm = confirm

    def verify(self) -> VerifyReport:
        """Read-only scan of the index. Never modifies the store."""
        report = VerifyReport(
            schema_version=self.store.schema_version(),
            expected_schema_version=SCHEMA_VERSION,
        )
        missing = self.store.missing_embedding_counts()

        for session in self.store.scan_all():
            if not session.path.exists():
                report.orphaned.append(session.id)
                continue
            if session.index_status == IndexStatus.FAILED:
                report.failed.append(session.id)
                continue
            if session.index_status != IndexStatus.INDEXED:
                continue

            summary_missing = (
                session.summary_status != SummaryStatus.SKIPPED and not session.summary
            )
            if missing.get(session.id) or summary_missing:
                logger.debug(
                    "Session %s: %d exchanges without embeddings, summary missing=%s",
                    session.id,
                    missing.get(session.id, 0),
                    summary_missing,
                )
                report.corrupted.append(session.id)
                continue

            try:
                current_hash = hash_file(session.path)
            except TranscriptError as e:
                logger.warning("Cannot hash %s: %s", session.path, e)
                report.stale.append(session.id)
                continue
            if current_hash != session.content_hash:
                report.stale.append(session.id)

        return report

    def repair(self) -> RepairReport:
        """Apply the minimal fix for each problem ``verify`` reports."""
        report = RepairReport()
        try:
            report.migrated_from = self.store.migrate()
        except StoreError as e:
            logger.error("Schema migration failed: %s", e)
            report.unrepairable.append(str(e))
            return report

        findings = self.verify()
        for session_id in findings.orphaned:
            logger.info("Deleting orphaned session %s", session_id)
            self.store.delete(session_id)
            report.deleted.append(session_id)

        for session_id in findings.corrupted + findings.stale:
            logger.info("Resetting session %s to stale", session_id)
            self.store.set_status(session_id, IndexStatus.STALE)
            report.reset.append(session_id)

        if findings.schema_mismatch:
            report.unrepairable.append(
                f"Schema version {findings.schema_version} does not match "
                f"{findings.expected_schema_version}"
            )
        return report

    def rebuild(self, pipeline: IndexingPipeline) -> IndexReport:
        """Delete the whole index and re-index every transcript.

        Raises RebuildRefused, with nothing deleted, unless the confirmer agrees.
        """
        if not self.confirm(REBUILD_PROMPT):
            raise RebuildRefused("Rebuild cancelled: interactive confirmation is required")

        logger.warning("Resetting index at %s", self.store.db_path)
        self.store.reset()
        return pipeline.index_all()
