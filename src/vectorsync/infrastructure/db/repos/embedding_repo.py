from __future__ import annotations

import json
from pathlib import Path

from vectorsync.domain.models.embedding import EmbeddingRecord
from vectorsync.infrastructure.db.sqlite import get_connection


class EmbeddingRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def upsert(self, record: EmbeddingRecord) -> EmbeddingRecord:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO embeddings (
                    id,
                    pool,
                    source_collection,
                    doc_id,
                    chunk_index,
                    chunk_text,
                    embedding_version,
                    embedding_dim,
                    bulk_run_id,
                    extension_fields_json,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(pool, source_collection, doc_id, chunk_index) DO UPDATE SET
                    chunk_text = excluded.chunk_text,
                    embedding_version = excluded.embedding_version,
                    embedding_dim = excluded.embedding_dim,
                    bulk_run_id = excluded.bulk_run_id,
                    extension_fields_json = excluded.extension_fields_json,
                    created_at = excluded.created_at
                """,
                (
                    record.id,
                    record.pool,
                    record.source_collection,
                    record.doc_id,
                    record.chunk_index,
                    record.chunk_text,
                    record.embedding_version,
                    record.embedding_dim,
                    record.bulk_run_id,
                    json.dumps(record.extension_fields or {}, ensure_ascii=True, sort_keys=True),
                    record.created_at,
                ),
            )
            conn.commit()
            row = conn.execute(
                """
                SELECT *
                FROM embeddings
                WHERE pool = ?
                  AND source_collection = ?
                  AND doc_id = ?
                  AND chunk_index = ?
                """,
                (record.pool, record.source_collection, record.doc_id, record.chunk_index),
            ).fetchone()
        return self._to_record(row)

    def get_by_key(self, pool: str, collection: str, doc_id: str, chunk_index: int) -> EmbeddingRecord | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT *
                FROM embeddings
                WHERE pool = ?
                  AND source_collection = ?
                  AND doc_id = ?
                  AND chunk_index = ?
                """,
                (pool, collection, doc_id, chunk_index),
            ).fetchone()
        return self._to_record(row) if row else None

    def exists_for_version(self, pool: str, collection: str, doc_id: str, embedding_version: str) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM embeddings
                WHERE pool = ?
                  AND source_collection = ?
                  AND doc_id = ?
                  AND embedding_version = ?
                LIMIT 1
                """,
                (pool, collection, doc_id, embedding_version),
            ).fetchone()
        return row is not None

    def list_for_document(self, pool: str, collection: str, doc_id: str) -> list[EmbeddingRecord]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM embeddings
                WHERE pool = ?
                  AND source_collection = ?
                  AND doc_id = ?
                ORDER BY chunk_index ASC
                """,
                (pool, collection, doc_id),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def list_for_pool(self, pool: str, *, limit: int = 200) -> list[EmbeddingRecord]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM embeddings
                WHERE pool = ?
                ORDER BY source_collection ASC, doc_id ASC, chunk_index ASC
                LIMIT ?
                """,
                (pool, limit),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def get_by_ids(self, record_ids: list[str]) -> list[EmbeddingRecord]:
        if not record_ids:
            return []
        placeholders = ",".join("?" for _ in record_ids)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM embeddings WHERE id IN ({placeholders})",
                tuple(record_ids),
            ).fetchall()
        by_id = {row["id"]: self._to_record(row) for row in rows}
        return [by_id[record_id] for record_id in record_ids if record_id in by_id]

    def delete_for_document(
        self,
        pool: str,
        collection: str,
        doc_id: str,
        *,
        exclude_run_id: str | None = None,
    ) -> list[str]:
        """Delete a document's embeddings, keeping rows written by ``exclude_run_id``.

        Returns the ids of the deleted rows so the vector store can drop the same points.
        """
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id
                FROM embeddings
                WHERE pool = ?
                  AND source_collection = ?
                  AND doc_id = ?
                  AND (? IS NULL OR bulk_run_id IS NULL OR bulk_run_id != ?)
                """,
                (pool, collection, doc_id, exclude_run_id, exclude_run_id),
            ).fetchall()
            ids = [str(row["id"]) for row in rows]
            if ids:
                placeholders = ",".join("?" for _ in ids)
                conn.execute(f"DELETE FROM embeddings WHERE id IN ({placeholders})", tuple(ids))
            conn.commit()
        return ids

    def count(self, pool: str | None = None) -> int:
        with get_connection(self.db_path) as conn:
            if pool:
                row = conn.execute("SELECT COUNT(*) AS c FROM embeddings WHERE pool = ?", (pool,)).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS c FROM embeddings").fetchone()
        return int(row["c"]) if row else 0

    @staticmethod
    def _to_record(row) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=row["id"],
            pool=row["pool"],
            source_collection=row["source_collection"],
            doc_id=row["doc_id"],
            chunk_index=int(row["chunk_index"]),
            chunk_text=row["chunk_text"],
            embedding_version=row["embedding_version"],
            embedding_dim=int(row["embedding_dim"]) if row["embedding_dim"] is not None else None,
            bulk_run_id=row["bulk_run_id"],
            extension_fields=json.loads(row["extension_fields_json"] or "{}"),
            created_at=row["created_at"],
        )
