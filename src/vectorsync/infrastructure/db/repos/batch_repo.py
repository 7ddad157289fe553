from __future__ import annotations

from pathlib import Path

from vectorsync.domain.models.bulk_embedding import (
    STATUS_CANCELED,
    STATUS_QUEUED,
    BulkEmbeddingBatch,
    ChunkMetadata,
)
from vectorsync.infrastructure.db.repos.chunk_metadata_repo import insert_metadata_rows
from vectorsync.infrastructure.db.sqlite import get_connection


class BatchRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert_batch(self, batch: BulkEmbeddingBatch, *, metadata: list[ChunkMetadata] | None = None) -> None:
        """Persist a batch together with the metadata of the chunks it covers."""
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO bulk_embedding_batches (
                    id,
                    run_id,
                    batch_index,
                    provider_batch_id,
                    status,
                    input_count,
                    succeeded_count,
                    failed_count,
                    error,
                    retry_count,
                    submitted_at,
                    completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch.id,
                    batch.run_id,
                    batch.batch_index,
                    batch.provider_batch_id,
                    batch.status,
                    batch.input_count,
                    batch.succeeded_count,
                    batch.failed_count,
                    batch.error,
                    batch.retry_count,
                    batch.submitted_at,
                    batch.completed_at,
                ),
            )
            if metadata:
                insert_metadata_rows(conn, metadata)
            conn.commit()

    def get_by_id(self, batch_id: str) -> BulkEmbeddingBatch | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM bulk_embedding_batches WHERE id = ?", (batch_id,)).fetchone()
        return self._to_batch(row) if row else None

    def list_for_run(self, run_id: str) -> list[BulkEmbeddingBatch]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM bulk_embedding_batches
                WHERE run_id = ?
                ORDER BY batch_index ASC
                """,
                (run_id,),
            ).fetchall()
        return [self._to_batch(row) for row in rows]

    def list_for_run_by_status(self, run_id: str, statuses: tuple[str, ...]) -> list[BulkEmbeddingBatch]:
        if not statuses:
            return []
        placeholders = ",".join("?" for _ in statuses)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM bulk_embedding_batches
                WHERE run_id = ?
                  AND status IN ({placeholders})
                ORDER BY batch_index ASC
                """,
                (run_id, *statuses),
            ).fetchall()
        return [self._to_batch(row) for row in rows]

    def update_poll_result(
        self,
        batch_id: str,
        *,
        status: str,
        succeeded_count: int,
        failed_count: int,
        error: str | None,
        completed_at: str | None,
    ) -> bool:
        """Record the outcome of one polling step; terminal batches are never rewritten."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE bulk_embedding_batches
                SET status = ?,
                    succeeded_count = ?,
                    failed_count = ?,
                    error = ?,
                    completed_at = ?
                WHERE id = ?
                  AND status NOT IN ('succeeded', 'failed', 'canceled')
                """,
                (status, succeeded_count, failed_count, error, completed_at, batch_id),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def reset_for_retry(self, batch_id: str, *, provider_batch_id: str, submitted_at: str) -> bool:
        """Requeue a failed batch under a new provider batch; chunks already merged stay counted."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE bulk_embedding_batches
                SET status = ?,
                    provider_batch_id = ?,
                    failed_count = 0,
                    error = NULL,
                    completed_at = NULL,
                    submitted_at = ?,
                    retry_count = retry_count + 1
                WHERE id = ?
                  AND status = 'failed'
                """,
                (STATUS_QUEUED, provider_batch_id, submitted_at, batch_id),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def mark_canceled(self, batch_id: str, *, completed_at: str, error: str | None = None) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE bulk_embedding_batches
                SET status = ?,
                    failed_count = input_count - succeeded_count,
                    error = COALESCE(?, error),
                    completed_at = ?
                WHERE id = ?
                  AND status NOT IN ('succeeded', 'failed', 'canceled')
                """,
                (STATUS_CANCELED, error, completed_at, batch_id),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def delete_for_run(self, run_id: str) -> int:
        """Drop every batch of a run together with its staged metadata."""
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM bulk_embedding_input_metadata WHERE run_id = ?", (run_id,))
            cursor = conn.execute("DELETE FROM bulk_embedding_batches WHERE run_id = ?", (run_id,))
            conn.commit()
        return int(cursor.rowcount or 0)

    @staticmethod
    def _to_batch(row) -> BulkEmbeddingBatch:
        return BulkEmbeddingBatch(
            id=row["id"],
            run_id=row["run_id"],
            batch_index=int(row["batch_index"]),
            provider_batch_id=row["provider_batch_id"],
            status=row["status"],
            input_count=int(row["input_count"] or 0),
            succeeded_count=int(row["succeeded_count"] or 0),
            failed_count=int(row["failed_count"] or 0),
            error=row["error"],
            retry_count=int(row["retry_count"] or 0),
            submitted_at=row["submitted_at"],
            completed_at=row["completed_at"],
        )
