from __future__ import annotations

import json
from pathlib import Path

from vectorsync.domain.models.bulk_embedding import (
    STATUS_QUEUED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    BulkEmbeddingRun,
    FailedChunk,
)
from vectorsync.infrastructure.db.sqlite import get_connection

_NON_TERMINAL_CLAUSE = "status NOT IN ('succeeded', 'failed', 'canceled')"


class RunRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert(self, run: BulkEmbeddingRun) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO bulk_embedding_runs (
                    id,
                    pool,
                    embedding_version,
                    status,
                    total_batches,
                    inputs,
                    succeeded,
                    failed,
                    error,
                    failed_chunk_data_json,
                    submitted_at,
                    completed_at,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.pool,
                    run.embedding_version,
                    run.status,
                    run.total_batches,
                    run.inputs,
                    run.succeeded,
                    run.failed,
                    run.error,
                    _dump_failed_chunks(run.failed_chunk_data),
                    run.submitted_at,
                    run.completed_at,
                    run.created_at,
                ),
            )
            conn.commit()

    def get_by_id(self, run_id: str) -> BulkEmbeddingRun | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM bulk_embedding_runs WHERE id = ?", (run_id,)).fetchone()
        return self._to_run(row) if row else None

    def get_active_run_for_pool(self, pool: str) -> BulkEmbeddingRun | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT *
                FROM bulk_embedding_runs
                WHERE pool = ?
                  AND status IN (?, ?)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (pool, STATUS_QUEUED, STATUS_RUNNING),
            ).fetchone()
        return self._to_run(row) if row else None

    def get_latest_succeeded_run(self, pool: str, *, exclude_run_id: str | None = None) -> BulkEmbeddingRun | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT *
                FROM bulk_embedding_runs
                WHERE pool = ?
                  AND status = ?
                  AND completed_at IS NOT NULL
                  AND id != COALESCE(?, '')
                ORDER BY completed_at DESC
                LIMIT 1
                """,
                (pool, STATUS_SUCCEEDED, exclude_run_id),
            ).fetchone()
        return self._to_run(row) if row else None

    def list_recent_runs(self, *, pool: str | None = None, limit: int = 50) -> list[BulkEmbeddingRun]:
        with get_connection(self.db_path) as conn:
            if pool:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM bulk_embedding_runs
                    WHERE pool = ?
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,
                    (pool, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM bulk_embedding_runs ORDER BY created_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [self._to_run(row) for row in rows]

    def mark_running(self, run_id: str, *, total_batches: int, inputs: int, submitted_at: str) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE bulk_embedding_runs
                SET status = ?,
                    total_batches = ?,
                    inputs = ?,
                    submitted_at = ?
                WHERE id = ?
                  AND status = ?
                """,
                (STATUS_RUNNING, total_batches, inputs, submitted_at, run_id, STATUS_QUEUED),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def finalize(
        self,
        run_id: str,
        *,
        status: str,
        succeeded: int,
        failed: int,
        error: str | None,
        failed_chunk_data: list[FailedChunk] | None,
        completed_at: str,
        total_batches: int | None = None,
        inputs: int | None = None,
    ) -> bool:
        """Move a non-terminal run into a terminal status; terminal runs are left untouched."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE bulk_embedding_runs
                SET status = ?,
                    succeeded = ?,
                    failed = ?,
                    error = ?,
                    failed_chunk_data_json = ?,
                    completed_at = ?,
                    total_batches = COALESCE(?, total_batches),
                    inputs = COALESCE(?, inputs)
                WHERE id = ?
                  AND {_NON_TERMINAL_CLAUSE}
                """,
                (
                    status,
                    succeeded,
                    failed,
                    error,
                    _dump_failed_chunks(failed_chunk_data),
                    completed_at,
                    total_batches,
                    inputs,
                    run_id,
                ),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def refresh_terminal_outcome(
        self,
        run_id: str,
        *,
        status: str,
        succeeded: int,
        failed: int,
        error: str | None,
        failed_chunk_data: list[FailedChunk] | None,
        completed_at: str,
    ) -> bool:
        """Re-derive the outcome of an already terminal run after a batch retry.

        Rows whose outcome is unchanged are left alone and reported as unchanged.
        """
        dumped = _dump_failed_chunks(failed_chunk_data)
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE bulk_embedding_runs
                SET status = ?,
                    succeeded = ?,
                    failed = ?,
                    error = ?,
                    failed_chunk_data_json = ?,
                    completed_at = ?
                WHERE id = ?
                  AND NOT ({_NON_TERMINAL_CLAUSE})
                  AND (
                      status != ?
                      OR succeeded != ?
                      OR failed != ?
                      OR COALESCE(error, '') != COALESCE(?, '')
                      OR COALESCE(failed_chunk_data_json, '') != COALESCE(?, '')
                  )
                """,
                (
                    status,
                    succeeded,
                    failed,
                    error,
                    dumped,
                    completed_at,
                    run_id,
                    status,
                    succeeded,
                    failed,
                    error,
                    dumped,
                ),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def append_failed_chunks(self, run_id: str, chunks: list[FailedChunk]) -> None:
        if not chunks:
            return
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT failed_chunk_data_json FROM bulk_embedding_runs WHERE id = ?",
                (run_id,),
            ).fetchone()
            if row is None:
                return
            existing = _load_failed_chunks(row["failed_chunk_data_json"]) or []
            merged = _dedupe_failed_chunks([*existing, *chunks])
            conn.execute(
                "UPDATE bulk_embedding_runs SET failed_chunk_data_json = ? WHERE id = ?",
                (_dump_failed_chunks(merged), run_id),
            )
            conn.commit()

    def remove_failed_chunks(self, run_id: str, chunks: list[FailedChunk]) -> None:
        if not chunks:
            return
        drop = set(chunks)
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT failed_chunk_data_json FROM bulk_embedding_runs WHERE id = ?",
                (run_id,),
            ).fetchone()
            if row is None:
                return
            remaining = [chunk for chunk in (_load_failed_chunks(row["failed_chunk_data_json"]) or []) if chunk not in drop]
            conn.execute(
                "UPDATE bulk_embedding_runs SET failed_chunk_data_json = ? WHERE id = ?",
                (_dump_failed_chunks(remaining or None), run_id),
            )
            conn.commit()

    def mark_canceled(self, run_id: str, *, completed_at: str, error: str | None = None) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE bulk_embedding_runs
                SET status = 'canceled',
                    error = COALESCE(?, error),
                    completed_at = ?
                WHERE id = ?
                  AND {_NON_TERMINAL_CLAUSE}
                """,
                (error, completed_at, run_id),
            )
            conn.commit()
        return bool(cursor.rowcount)

    @staticmethod
    def _to_run(row) -> BulkEmbeddingRun:
        return BulkEmbeddingRun(
            id=row["id"],
            pool=row["pool"],
            embedding_version=row["embedding_version"],
            status=row["status"],
            total_batches=int(row["total_batches"] or 0),
            inputs=int(row["inputs"] or 0),
            succeeded=int(row["succeeded"] or 0),
            failed=int(row["failed"] or 0),
            error=row["error"],
            failed_chunk_data=_load_failed_chunks(row["failed_chunk_data_json"]),
            submitted_at=row["submitted_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
        )


def _dedupe_failed_chunks(chunks: list[FailedChunk]) -> list[FailedChunk]:
    seen: set[FailedChunk] = set()
    out: list[FailedChunk] = []
    for chunk in chunks:
        if chunk in seen:
            continue
        seen.add(chunk)
        out.append(chunk)
    return out


def _dump_failed_chunks(chunks: list[FailedChunk] | None) -> str | None:
    if not chunks:
        return None
    return json.dumps([chunk.to_dict() for chunk in chunks], ensure_ascii=True)


def _load_failed_chunks(raw: str | None) -> list[FailedChunk] | None:
    if not raw:
        return None
    try:
        items = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(items, list):
        return None
    return [FailedChunk.from_dict(item) for item in items if isinstance(item, dict)]
