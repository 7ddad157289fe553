from __future__ import annotations

import logging
from dataclasses import dataclass

from vectorsync.core.errors import BatchNotFoundError, RunConflictError, RunNotFoundError, ValidationError
from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.bulk_embedding import (
    STATUS_CANCELED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    BulkEmbeddingBatch,
    BulkEmbeddingRun,
)
from vectorsync.domain.models.provider import BulkEmbeddingInput, BulkEmbeddingProvider
from vectorsync.infrastructure.db.repos.batch_repo import BatchRepo
from vectorsync.infrastructure.db.repos.chunk_metadata_repo import ChunkMetadataRepo
from vectorsync.infrastructure.db.repos.run_repo import RunRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryResult:
    batch_id: str
    run_id: str
    status: str
    retried: bool
    provider_batch_id: str | None = None
    message: str | None = None


class RetryBatchService:
    def __init__(self, *, batch_repo: BatchRepo, run_repo: RunRepo, metadata_repo: ChunkMetadataRepo) -> None:
        self.batch_repo = batch_repo
        self.run_repo = run_repo
        self.metadata_repo = metadata_repo

    def load(self, batch_id: str) -> tuple[BulkEmbeddingBatch, BulkEmbeddingRun]:
        batch = self.batch_repo.get_by_id(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        run = self.run_repo.get_by_id(batch.run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found for batch {batch_id}: {batch.run_id}")
        return batch, run

    def check_retryable(self, batch: BulkEmbeddingBatch, run: BulkEmbeddingRun) -> RetryResult | None:
        """Return a no-op result for batches with nothing to retry; raise when retrying is not allowed."""
        if batch.status in (STATUS_SUCCEEDED, STATUS_QUEUED, STATUS_RUNNING):
            return RetryResult(
                batch_id=batch.id,
                run_id=run.id,
                status=batch.status,
                retried=False,
                message=f"Batch is already {batch.status}",
            )
        if batch.status == STATUS_CANCELED:
            raise ValidationError(f"Cannot retry canceled batch {batch.id}")
        if run.status in (STATUS_QUEUED, STATUS_RUNNING):
            raise RunConflictError(f"Cannot retry batch while run is {run.status} ({run.id})")
        return None

    def resubmit(
        self,
        batch: BulkEmbeddingBatch,
        run: BulkEmbeddingRun,
        provider: BulkEmbeddingProvider,
    ) -> RetryResult:
        metadata = self.metadata_repo.list_for_batch(batch.id)
        if not metadata:
            raise ValidationError(f"Batch {batch.id} has no retained chunk metadata to retry")

        submission = provider.prepare_batch([BulkEmbeddingInput(id=item.input_id, text=item.text) for item in metadata])
        if not self.batch_repo.reset_for_retry(
            batch.id,
            provider_batch_id=submission.provider_batch_id,
            submitted_at=now_utc_iso(),
        ):
            current = self.batch_repo.get_by_id(batch.id)
            status = current.status if current is not None else batch.status
            return RetryResult(
                batch_id=batch.id,
                run_id=run.id,
                status=status,
                retried=False,
                message=f"Batch changed to {status} while retrying",
            )
        self.run_repo.remove_failed_chunks(run.id, [item.as_failed_chunk() for item in metadata])
        self._release_superseded(provider, batch.provider_batch_id)
        logger.info(
            "Run %s: batch %s resubmitted as %s with %s chunk(s)",
            run.id,
            batch.batch_index,
            submission.provider_batch_id,
            len(metadata),
        )
        return RetryResult(
            batch_id=batch.id,
            run_id=run.id,
            status=STATUS_QUEUED,
            retried=True,
            provider_batch_id=submission.provider_batch_id,
        )

    @staticmethod
    def _release_superseded(provider: BulkEmbeddingProvider, provider_batch_id: str) -> None:
        release = getattr(provider, "release", None)
        if not callable(release):
            return
        try:
            release([provider_batch_id])
        except Exception:
            logger.exception("Provider release hook failed for superseded batch %s", provider_batch_id)
