from __future__ import annotations

import logging
from dataclasses import dataclass, field

from vectorsync.application.services.completion_service import CompletionMerger
from vectorsync.core.errors import PersistenceError
from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.bulk_embedding import (
    RUN_STATUSES,
    STATUS_QUEUED,
    STATUS_RUNNING,
    BulkEmbeddingBatch,
    BulkEmbeddingRun,
    FailedChunk,
    is_terminal,
)
from vectorsync.domain.models.provider import BulkEmbeddingProvider
from vectorsync.infrastructure.db.repos.batch_repo import BatchRepo
from vectorsync.infrastructure.db.repos.run_repo import RunRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchPollOutcome:
    batch_id: str
    status: str
    succeeded: int
    failed: int
    error: str | None = None
    changed: bool = False


@dataclass(slots=True)
class RunPollSummary:
    run_id: str
    outcomes: list[BatchPollOutcome] = field(default_factory=list)
    failed_chunks: list[FailedChunk] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return sum(1 for outcome in self.outcomes if not is_terminal(outcome.status))


class BatchPollingService:
    """One polling step over the non-terminal batches of a run.

    Provider outputs are streamed straight into the completion merger. Each
    batch's status and counters are committed as soon as that batch has been
    polled, and a failed or canceled batch never stops its siblings.
    """

    def __init__(self, *, batch_repo: BatchRepo, run_repo: RunRepo, merger: CompletionMerger) -> None:
        self.batch_repo = batch_repo
        self.run_repo = run_repo
        self.merger = merger

    def poll_run(self, run: BulkEmbeddingRun, provider: BulkEmbeddingProvider) -> RunPollSummary:
        summary = RunPollSummary(run_id=run.id)
        for batch in self.batch_repo.list_for_run(run.id):
            outcome = self.poll_batch(run, batch, provider, summary=summary)
            summary.outcomes.append(outcome)
        return summary

    def poll_batch(
        self,
        run: BulkEmbeddingRun,
        batch: BulkEmbeddingBatch,
        provider: BulkEmbeddingProvider,
        *,
        summary: RunPollSummary | None = None,
    ) -> BatchPollOutcome:
        if is_terminal(batch.status):
            return BatchPollOutcome(
                batch_id=batch.id,
                status=batch.status,
                succeeded=batch.succeeded_count,
                failed=batch.failed_count,
                error=batch.error,
            )

        session = self.merger.new_session(run)
        try:
            result = provider.poll_or_complete(
                batch.provider_batch_id,
                lambda output: self.merger.merge_output(session, output),
            )
        except PersistenceError:
            self._record_chunk_failures(run.id, session.failed_chunks, summary)
            raise
        except Exception as exc:
            logger.warning(
                "Run %s: polling batch %s (%s) failed, will retry: %s",
                run.id,
                batch.batch_index,
                batch.provider_batch_id,
                exc,
            )
            succeeded = self._accumulated_succeeded(batch, session.succeeded)
            if succeeded != batch.succeeded_count:
                self.batch_repo.update_poll_result(
                    batch.id,
                    status=batch.status,
                    succeeded_count=succeeded,
                    failed_count=batch.failed_count,
                    error=str(exc),
                    completed_at=None,
                )
            self._record_chunk_failures(run.id, session.failed_chunks, summary)
            return BatchPollOutcome(
                batch_id=batch.id,
                status=batch.status,
                succeeded=succeeded,
                failed=batch.failed_count,
                error=str(exc),
            )

        status = result.status if result.status in RUN_STATUSES else STATUS_RUNNING
        if status == STATUS_QUEUED and batch.status == STATUS_RUNNING:
            status = STATUS_RUNNING
        succeeded = self._accumulated_succeeded(batch, session.succeeded)
        if is_terminal(status):
            failed = batch.input_count - succeeded
        else:
            failed = min(session.failed, batch.input_count - succeeded)
        completed_at = now_utc_iso() if is_terminal(status) else None

        changed = self.batch_repo.update_poll_result(
            batch.id,
            status=status,
            succeeded_count=succeeded,
            failed_count=failed,
            error=result.error,
            completed_at=completed_at,
        )
        self._record_chunk_failures(run.id, session.failed_chunks, summary)
        if is_terminal(status):
            logger.info(
                "Run %s: batch %s finished as %s (%s succeeded, %s failed)",
                run.id,
                batch.batch_index,
                status,
                succeeded,
                failed,
            )
        return BatchPollOutcome(
            batch_id=batch.id,
            status=status,
            succeeded=succeeded,
            failed=failed,
            error=result.error,
            changed=changed,
        )

    @staticmethod
    def _accumulated_succeeded(batch: BulkEmbeddingBatch, merged: int) -> int:
        # Earlier polls and pre-retry submissions may already have merged part of the batch.
        return min(batch.succeeded_count + merged, batch.input_count)

    def _record_chunk_failures(
        self,
        run_id: str,
        chunks: list[FailedChunk],
        summary: RunPollSummary | None,
    ) -> None:
        if not chunks:
            return
        self.run_repo.append_failed_chunks(run_id, chunks)
        if summary is not None:
            summary.failed_chunks.extend(chunks)
