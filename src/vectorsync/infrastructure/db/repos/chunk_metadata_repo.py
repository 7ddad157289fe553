from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from vectorsync.domain.models.bulk_embedding import ChunkMetadata
from vectorsync.infrastructure.db.sqlite import get_connection

_INSERT_SQL = """
INSERT INTO bulk_embedding_input_metadata (
    id,
    run_id,
    batch_id,
    input_id,
    text,
    source_collection,
    doc_id,
    chunk_index,
    embedding_version,
    extension_fields_json,
    created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(run_id, input_id) DO UPDATE SET
    batch_id = excluded.batch_id,
    text = excluded.text,
    extension_fields_json = excluded.extension_fields_json
"""


def insert_metadata_rows(conn: sqlite3.Connection, rows: list[ChunkMetadata]) -> None:
    """Write metadata rows on an open connection; the caller owns the transaction."""
    conn.executemany(
        _INSERT_SQL,
        [
            (
                item.id,
                item.run_id,
                item.batch_id,
                item.input_id,
                item.text,
                item.source_collection,
                item.doc_id,
                item.chunk_index,
                item.embedding_version,
                json.dumps(item.extension_fields or {}, ensure_ascii=True, sort_keys=True),
                item.created_at,
            )
            for item in rows
        ],
    )


class ChunkMetadataRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert_many(self, rows: list[ChunkMetadata]) -> None:
        if not rows:
            return
        with get_connection(self.db_path) as conn:
            insert_metadata_rows(conn, rows)
            conn.commit()

    def get(self, run_id: str, input_id: str) -> ChunkMetadata | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT *
                FROM bulk_embedding_input_metadata
                WHERE run_id = ?
                  AND input_id = ?
                """,
                (run_id, input_id),
            ).fetchone()
        return self._to_metadata(row) if row else None

    def list_for_batch(self, batch_id: str) -> list[ChunkMetadata]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM bulk_embedding_input_metadata
                WHERE batch_id = ?
                ORDER BY source_collection ASC, doc_id ASC, chunk_index ASC
                """,
                (batch_id,),
            ).fetchall()
        return [self._to_metadata(row) for row in rows]

    def count_for_run(self, run_id: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM bulk_embedding_input_metadata WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def count_for_batch(self, batch_id: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM bulk_embedding_input_metadata WHERE batch_id = ?",
                (batch_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def delete(self, metadata_id: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM bulk_embedding_input_metadata WHERE id = ?", (metadata_id,))
            conn.commit()

    def delete_for_batches(self, batch_ids: list[str]) -> int:
        if not batch_ids:
            return 0
        placeholders = ",".join("?" for _ in batch_ids)
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"DELETE FROM bulk_embedding_input_metadata WHERE batch_id IN ({placeholders})",
                tuple(batch_ids),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    def delete_for_run(self, run_id: str) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM bulk_embedding_input_metadata WHERE run_id = ?",
                (run_id,),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    @staticmethod
    def _to_metadata(row) -> ChunkMetadata:
        return ChunkMetadata(
            id=row["id"],
            run_id=row["run_id"],
            batch_id=row["batch_id"],
            input_id=row["input_id"],
            text=row["text"],
            source_collection=row["source_collection"],
            doc_id=row["doc_id"],
            chunk_index=int(row["chunk_index"]),
            embedding_version=row["embedding_version"],
            extension_fields=json.loads(row["extension_fields_json"] or "{}"),
            created_at=row["created_at"],
        )
