from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from vectorsync.application.services.batch_polling_service import BatchPollingService
from vectorsync.application.services.batch_stream_service import ChunkBatchStreamer
from vectorsync.application.services.completion_service import CompletionMerger
from vectorsync.application.services.eligibility_service import EligibilityScanner
from vectorsync.application.services.retry_batch_service import RetryBatchService, RetryResult
from vectorsync.application.services.run_finalizer_service import RunFinalizer
from vectorsync.application.services.task_queue_service import TaskQueueService
from vectorsync.core.config import AppPaths, BulkSettings, load_settings
from vectorsync.core.errors import (
    BatchNotFoundError,
    ChunkDataError,
    ConfigurationError,
    RunNotFoundError,
    ValidationError,
)
from vectorsync.core.ids import new_uuid
from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.bulk_embedding import (
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_SUCCEEDED,
    BulkEmbeddingBatch,
    BulkEmbeddingRun,
    is_terminal,
)
from vectorsync.domain.models.knowledge_pool import KnowledgePool
from vectorsync.domain.models.provider import BulkEmbeddingProvider
from vectorsync.infrastructure.db.repos.batch_repo import BatchRepo
from vectorsync.infrastructure.db.repos.chunk_metadata_repo import ChunkMetadataRepo
from vectorsync.infrastructure.db.repos.document_repo import DocumentRepo
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo
from vectorsync.infrastructure.db.repos.run_repo import RunRepo

logger = logging.getLogger(__name__)

PREPARE_TASK = "vectorsync:prepare-bulk-embedding"
POLL_RUN_TASK = "vectorsync:poll-or-complete-bulk-embedding"
POLL_BATCH_TASK = "vectorsync:poll-batch"


@dataclass(slots=True)
class BulkEmbedResult:
    run_id: str
    status: str
    conflict: bool = False
    message: str | None = None


@dataclass(slots=True)
class RunStatusView:
    run: BulkEmbeddingRun
    batches: list[BulkEmbeddingBatch] = field(default_factory=list)
    pending_metadata: int = 0


class BulkEmbedService:
    """Bulk re-embedding orchestrator.

    ``start_bulk_embed`` only records a queued run and enqueues the prepare task.
    Everything else happens in task handlers that are safe to run more than once:

    * prepare: scan and stream chunks into batches, then mark the run running
    * poll-or-complete: poll every open batch, re-enqueue itself while any is open,
      finalize once all are terminal
    * poll-batch: drive one retried batch to a terminal state and refresh the run
    """

    def __init__(
        self,
        *,
        pools: dict[str, KnowledgePool],
        run_repo: RunRepo,
        batch_repo: BatchRepo,
        metadata_repo: ChunkMetadataRepo,
        scanner: EligibilityScanner,
        streamer: ChunkBatchStreamer,
        polling: BatchPollingService,
        finalizer: RunFinalizer,
        retry_service: RetryBatchService,
        task_queue: TaskQueueService,
        settings: BulkSettings,
    ) -> None:
        self.pools = pools
        self.run_repo = run_repo
        self.batch_repo = batch_repo
        self.metadata_repo = metadata_repo
        self.scanner = scanner
        self.streamer = streamer
        self.polling = polling
        self.finalizer = finalizer
        self.retry_service = retry_service
        self.task_queue = task_queue
        self.settings = settings

    def register_tasks(self) -> None:
        self.task_queue.register(PREPARE_TASK, lambda payload: self.prepare_run(str(payload["run_id"])))
        self.task_queue.register(POLL_RUN_TASK, lambda payload: self.poll_or_complete_run(str(payload["run_id"])))
        self.task_queue.register(POLL_BATCH_TASK, lambda payload: self.poll_batch(str(payload["batch_id"])))

    def get_pool(self, pool_name: str) -> KnowledgePool:
        pool = self.pools.get(pool_name)
        if pool is None:
            known = ", ".join(sorted(self.pools)) or "none configured"
            raise ConfigurationError(f"Unknown knowledge pool {pool_name!r} (known: {known})")
        return pool

    def get_provider(self, pool_name: str) -> BulkEmbeddingProvider:
        pool = self.get_pool(pool_name)
        provider = pool.provider
        if provider is None:
            raise ConfigurationError(f"Knowledge pool {pool_name!r} has no bulk embedding provider")
        missing = [
            name
            for name in ("add_chunk", "prepare_batch", "poll_or_complete")
            if not callable(getattr(provider, name, None))
        ]
        if missing:
            raise ConfigurationError(
                f"Bulk embedding provider for pool {pool_name!r} is missing: {', '.join(missing)}"
            )
        return provider

    def start_bulk_embed(self, pool_name: str) -> BulkEmbedResult:
        pool = self.get_pool(pool_name)
        self.get_provider(pool_name)

        active = self.run_repo.get_active_run_for_pool(pool.name)
        if active is not None:
            return BulkEmbedResult(
                run_id=active.id,
                status=active.status,
                conflict=True,
                message=f"A bulk embedding run is already running for pool {pool.name!r}: {active.id}",
            )

        now = now_utc_iso()
        run = BulkEmbeddingRun(
            id=new_uuid(),
            pool=pool.name,
            embedding_version=pool.embedding_version,
            status=STATUS_QUEUED,
            total_batches=0,
            inputs=0,
            succeeded=0,
            failed=0,
            error=None,
            failed_chunk_data=None,
            submitted_at=None,
            completed_at=None,
            created_at=now,
        )
        self.run_repo.insert(run)
        self.task_queue.enqueue(PREPARE_TASK, {"run_id": run.id}, queue_name=self.settings.prepare_queue_name)
        logger.info("Queued bulk embedding run %s for pool %s (%s)", run.id, pool.name, pool.embedding_version)
        return BulkEmbedResult(run_id=run.id, status=run.status)

    def prepare_run(self, run_id: str) -> dict[str, Any]:
        run = self._require_run(run_id)
        if run.status != STATUS_QUEUED:
            logger.debug("Prepare task for run %s skipped (status %s)", run.id, run.status)
            return {"run_id": run.id, "status": run.status, "skipped": True}

        provider = self.get_provider(run.pool)
        pool = self.get_pool(run.pool)

        purged = self.batch_repo.delete_for_run(run.id)
        if purged:
            logger.warning("Run %s: discarded %s batch(es) from an interrupted prepare", run.id, purged)

        baseline = self.scanner.find_baseline(pool.name, exclude_run_id=run.id)
        try:
            total_chunks = self.streamer.count_chunks(pool, baseline)
        except ChunkDataError as exc:
            self.run_repo.finalize(
                run.id,
                status=STATUS_FAILED,
                succeeded=0,
                failed=0,
                error=str(exc),
                failed_chunk_data=None,
                completed_at=now_utc_iso(),
            )
            logger.error("Run %s failed during chunking: %s", run.id, exc)
            raise

        if total_chunks == 0:
            self.run_repo.finalize(
                run.id,
                status=STATUS_SUCCEEDED,
                succeeded=0,
                failed=0,
                error=None,
                failed_chunk_data=None,
                completed_at=now_utc_iso(),
                total_batches=0,
                inputs=0,
            )
            logger.info("Run %s: nothing to embed for pool %s", run.id, pool.name)
            return {"run_id": run.id, "status": STATUS_SUCCEEDED, "inputs": 0, "batches": 0}

        summary = self.streamer.stream(run, pool, provider, baseline, total_chunks=total_chunks)
        if not self.run_repo.mark_running(
            run.id,
            total_batches=summary.total_batches,
            inputs=summary.inputs,
            submitted_at=now_utc_iso(),
        ):
            # Canceled while streaming; the poll task cleans the batches up.
            logger.info("Run %s changed state while preparing", run.id)
        self.task_queue.enqueue(POLL_RUN_TASK, {"run_id": run.id}, queue_name=self.settings.poll_queue_name)
        return {
            "run_id": run.id,
            "status": "running",
            "inputs": summary.inputs,
            "batches": summary.total_batches,
        }

    def poll_or_complete_run(self, run_id: str) -> dict[str, Any]:
        run = self._require_run(run_id)
        if run.status == STATUS_CANCELED:
            return self._clean_up_canceled_run(run)
        if is_terminal(run.status):
            return {"run_id": run.id, "status": run.status, "skipped": True}

        provider = self.get_provider(run.pool)
        summary = self.polling.poll_run(run, provider)
        if summary.pending:
            self.task_queue.enqueue(
                POLL_RUN_TASK,
                {"run_id": run.id},
                queue_name=self.settings.poll_queue_name,
                delay_seconds=self.settings.poll_interval_seconds,
            )
            return {"run_id": run.id, "status": run.status, "pending_batches": summary.pending}

        result = self.finalizer.finalize(self._require_run(run.id), provider)
        status = result.status if result is not None else run.status
        return {"run_id": run.id, "status": status, "pending_batches": 0}

    def poll_batch(self, batch_id: str) -> dict[str, Any]:
        batch = self.batch_repo.get_by_id(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        if is_terminal(batch.status):
            return {"batch_id": batch.id, "status": batch.status, "skipped": True}

        run = self._require_run(batch.run_id)
        provider = self.get_provider(run.pool)
        outcome = self.polling.poll_batch(run, batch, provider)
        if not is_terminal(outcome.status):
            self.task_queue.enqueue(
                POLL_BATCH_TASK,
                {"batch_id": batch.id},
                queue_name=self.settings.poll_queue_name,
                delay_seconds=self.settings.poll_interval_seconds,
            )
            return {"batch_id": batch.id, "status": outcome.status}

        self.finalizer.finalize(self._require_run(run.id), provider)
        return {"batch_id": batch.id, "status": outcome.status}

    def retry_failed_batch(self, batch_id: str) -> RetryResult:
        batch, run = self.retry_service.load(batch_id)
        noop = self.retry_service.check_retryable(batch, run)
        if noop is not None:
            return noop
        provider = self.get_provider(run.pool)
        result = self.retry_service.resubmit(batch, run, provider)
        if result.retried:
            self.task_queue.enqueue(POLL_BATCH_TASK, {"batch_id": batch.id}, queue_name=self.settings.poll_queue_name)
        return result

    def cancel_run(self, run_id: str) -> BulkEmbeddingRun:
        run = self._require_run(run_id)
        if is_terminal(run.status):
            return run
        now = now_utc_iso()
        self.run_repo.mark_canceled(run.id, completed_at=now, error="Canceled by request")
        self.task_queue.enqueue(POLL_RUN_TASK, {"run_id": run.id}, queue_name=self.settings.poll_queue_name)
        logger.info("Run %s canceled", run.id)
        return self._require_run(run.id)

    def cancel_batch(self, batch_id: str) -> BulkEmbeddingBatch:
        batch = self.batch_repo.get_by_id(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        if not is_terminal(batch.status):
            self.batch_repo.mark_canceled(batch.id, completed_at=now_utc_iso(), error="Canceled by request")
            logger.info("Batch %s of run %s canceled", batch.id, batch.run_id)
        updated = self.batch_repo.get_by_id(batch.id)
        return updated if updated is not None else batch

    def get_run_status(self, run_id: str) -> RunStatusView:
        run = self._require_run(run_id)
        return RunStatusView(
            run=run,
            batches=self.batch_repo.list_for_run(run.id),
            pending_metadata=self.metadata_repo.count_for_run(run.id),
        )

    def list_failed_batches(self, run_id: str) -> list[BulkEmbeddingBatch]:
        run = self._require_run(run_id)
        return self.batch_repo.list_for_run_by_status(run.id, (STATUS_FAILED,))

    def list_runs(self, *, pool: str | None = None, limit: int = 50) -> list[BulkEmbeddingRun]:
        return self.run_repo.list_recent_runs(pool=pool, limit=limit)

    def _clean_up_canceled_run(self, run: BulkEmbeddingRun) -> dict[str, Any]:
        open_batches = [batch for batch in self.batch_repo.list_for_run(run.id) if not is_terminal(batch.status)]
        if not open_batches:
            return {"run_id": run.id, "status": run.status, "skipped": True}
        now = now_utc_iso()
        for batch in open_batches:
            self.batch_repo.mark_canceled(batch.id, completed_at=now, error="Run canceled")
        pool = self.pools.get(run.pool)
        provider = pool.provider if pool is not None else None
        self.finalizer.finalize(self._require_run(run.id), provider)
        return {"run_id": run.id, "status": run.status, "canceled_batches": len(open_batches)}

    def _require_run(self, run_id: str) -> BulkEmbeddingRun:
        if not run_id:
            raise ValidationError("run_id is required")
        run = self.run_repo.get_by_id(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run


def build_bulk_embed_service(
    paths: AppPaths,
    pools: dict[str, KnowledgePool],
    *,
    vector_store,
    settings: BulkSettings | None = None,
    task_queue: TaskQueueService | None = None,
) -> BulkEmbedService:
    """Wire the orchestrator against the project database and register its task handlers."""
    settings = settings or load_settings()
    db_path = paths.db_path
    run_repo = RunRepo(db_path)
    batch_repo = BatchRepo(db_path)
    metadata_repo = ChunkMetadataRepo(db_path)
    document_repo = DocumentRepo(db_path)
    embedding_repo = EmbeddingRepo(db_path)
    scanner = EligibilityScanner(
        document_repo=document_repo,
        embedding_repo=embedding_repo,
        run_repo=run_repo,
        page_size=settings.document_page_size,
    )
    merger = CompletionMerger(
        document_repo=document_repo,
        embedding_repo=embedding_repo,
        metadata_repo=metadata_repo,
        vector_store=vector_store,
    )
    service = BulkEmbedService(
        pools=pools,
        run_repo=run_repo,
        batch_repo=batch_repo,
        metadata_repo=metadata_repo,
        scanner=scanner,
        streamer=ChunkBatchStreamer(scanner=scanner, batch_repo=batch_repo),
        polling=BatchPollingService(batch_repo=batch_repo, run_repo=run_repo, merger=merger),
        finalizer=RunFinalizer(run_repo=run_repo, batch_repo=batch_repo, metadata_repo=metadata_repo),
        retry_service=RetryBatchService(batch_repo=batch_repo, run_repo=run_repo, metadata_repo=metadata_repo),
        task_queue=task_queue or TaskQueueService(db_path=db_path, max_attempts=settings.task_max_attempts),
        settings=settings,
    )
    service.register_tasks()
    return service
