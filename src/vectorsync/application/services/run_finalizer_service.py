from __future__ import annotations

import logging
from dataclasses import dataclass, field

from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.bulk_embedding import (
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    BulkEmbeddingBatch,
    BulkEmbeddingRun,
    FailedChunk,
    is_terminal,
)
from vectorsync.domain.models.provider import BulkEmbeddingProvider
from vectorsync.infrastructure.db.repos.batch_repo import BatchRepo
from vectorsync.infrastructure.db.repos.chunk_metadata_repo import ChunkMetadataRepo
from vectorsync.infrastructure.db.repos.run_repo import RunRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FinalizeSummary:
    run_id: str
    status: str
    succeeded: int
    failed: int
    error: str | None
    failed_chunks: list[FailedChunk] = field(default_factory=list)
    changed: bool = False
    notified: bool = False


def summarize_run_status(batches: list[BulkEmbeddingBatch]) -> str:
    statuses = [batch.status for batch in batches]
    if not statuses or STATUS_SUCCEEDED in statuses:
        return STATUS_SUCCEEDED
    if all(status == STATUS_CANCELED for status in statuses):
        return STATUS_CANCELED
    return STATUS_FAILED


class RunFinalizer:
    """Closes out a run once all of its batches are terminal.

    Counters are summed over batches; the run succeeds when at least one batch
    succeeded. Metadata of succeeded and canceled batches is purged, metadata of
    failed batches is kept for retries. Also re-derives the outcome of an
    already terminal run after one of its batches was retried.
    """

    def __init__(self, *, run_repo: RunRepo, batch_repo: BatchRepo, metadata_repo: ChunkMetadataRepo) -> None:
        self.run_repo = run_repo
        self.batch_repo = batch_repo
        self.metadata_repo = metadata_repo

    def finalize(self, run: BulkEmbeddingRun, provider: BulkEmbeddingProvider | None) -> FinalizeSummary | None:
        batches = self.batch_repo.list_for_run(run.id)
        if any(not is_terminal(batch.status) for batch in batches):
            return None

        succeeded = sum(batch.succeeded_count for batch in batches)
        failed = sum(batch.failed_count for batch in batches)
        status = STATUS_CANCELED if run.status == STATUS_CANCELED else summarize_run_status(batches)

        failed_chunks = list(run.failed_chunk_data or [])
        for batch in batches:
            # On a succeeded batch, leftover metadata means the provider never returned that chunk.
            for item in self.metadata_repo.list_for_batch(batch.id):
                chunk = item.as_failed_chunk()
                if chunk not in failed_chunks:
                    failed_chunks.append(chunk)

        purged = self.metadata_repo.delete_for_batches(
            [batch.id for batch in batches if batch.status in (STATUS_SUCCEEDED, STATUS_CANCELED)]
        )
        if purged:
            logger.debug("Run %s: purged %s chunk metadata row(s)", run.id, purged)

        error = self._build_error(batches, failed_chunks)
        completed_at = now_utc_iso()
        if is_terminal(run.status):
            changed = self.run_repo.refresh_terminal_outcome(
                run.id,
                status=status,
                succeeded=succeeded,
                failed=failed,
                error=error,
                failed_chunk_data=failed_chunks or None,
                completed_at=completed_at,
            )
        else:
            changed = self.run_repo.finalize(
                run.id,
                status=status,
                succeeded=succeeded,
                failed=failed,
                error=error,
                failed_chunk_data=failed_chunks or None,
                completed_at=completed_at,
                total_batches=len(batches),
            )

        summary = FinalizeSummary(
            run_id=run.id,
            status=status,
            succeeded=succeeded,
            failed=failed,
            error=error,
            failed_chunks=failed_chunks,
            changed=changed,
        )
        if not changed:
            logger.debug("Run %s was already finalized elsewhere", run.id)
            return summary

        logger.info(
            "Run %s finished as %s (%s succeeded, %s failed, %s batch(es))",
            run.id,
            status,
            succeeded,
            failed,
            len(batches),
        )
        if provider is not None:
            self._release(provider, [batch for batch in batches if batch.status == STATUS_SUCCEEDED])
            summary.notified = self._notify(provider, run, batches, error, failed_chunks)
        return summary

    @staticmethod
    def _build_error(batches: list[BulkEmbeddingBatch], failed_chunks: list[FailedChunk]) -> str | None:
        parts: list[str] = []
        failed_batches = [batch for batch in batches if batch.status == STATUS_FAILED]
        canceled_batches = [batch for batch in batches if batch.status == STATUS_CANCELED]
        if failed_batches:
            detail = next((batch.error for batch in failed_batches if batch.error), None)
            message = f"{len(failed_batches)} batch(es) failed"
            parts.append(f"{message}: {detail}" if detail else message)
        if canceled_batches:
            parts.append(f"{len(canceled_batches)} batch(es) canceled")
        if failed_chunks:
            parts.append(f"{len(failed_chunks)} chunk(s) failed")
        return "; ".join(parts) or None

    @staticmethod
    def _release(provider: BulkEmbeddingProvider, batches: list[BulkEmbeddingBatch]) -> None:
        release = getattr(provider, "release", None)
        if not callable(release) or not batches:
            return
        try:
            release([batch.provider_batch_id for batch in batches])
        except Exception:
            logger.exception("Provider release hook failed")

    @staticmethod
    def _notify(
        provider: BulkEmbeddingProvider,
        run: BulkEmbeddingRun,
        batches: list[BulkEmbeddingBatch],
        error: str | None,
        failed_chunks: list[FailedChunk],
    ) -> bool:
        any_failed = any(batch.status in (STATUS_FAILED, STATUS_CANCELED) for batch in batches)
        any_succeeded = any(batch.status == STATUS_SUCCEEDED for batch in batches)
        if batches and any_succeeded and not any_failed and not failed_chunks:
            return False
        if not batches and not failed_chunks:
            return False
        on_error = getattr(provider, "on_error", None)
        if not callable(on_error):
            return False
        try:
            on_error(
                [batch.provider_batch_id for batch in batches],
                error or f"Bulk embedding run {run.id} did not complete successfully",
                failed_chunks,
            )
        except Exception:
            logger.exception("Provider on_error hook failed for run %s", run.id)
        return True
