from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any

from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.embedding import DocumentPage, SourceDocument
from vectorsync.infrastructure.db.sqlite import get_connection


class DocumentRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def upsert(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        *,
        updated_at: str | None = None,
    ) -> SourceDocument:
        now = updated_at or now_utc_iso()
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO documents (collection, id, data_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(collection, id) DO UPDATE SET
                    data_json = excluded.data_json,
                    updated_at = excluded.updated_at
                """,
                (collection, str(doc_id), json.dumps(data, ensure_ascii=True, sort_keys=True), now, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND id = ?",
                (collection, str(doc_id)),
            ).fetchone()
        return self._to_document(row)

    def delete(self, collection: str, doc_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, str(doc_id)),
            )
            conn.commit()
        return bool(cursor.rowcount)

    def find_by_id(self, collection: str, doc_id: str) -> SourceDocument | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND id = ?",
                (collection, str(doc_id)),
            ).fetchone()
        return self._to_document(row) if row else None

    def find_page(self, collection: str, page: int, limit: int) -> DocumentPage:
        safe_page = max(1, int(page))
        safe_limit = max(1, int(limit))
        with get_connection(self.db_path) as conn:
            total_row = conn.execute(
                "SELECT COUNT(*) AS c FROM documents WHERE collection = ?",
                (collection,),
            ).fetchone()
            rows = conn.execute(
                """
                SELECT *
                FROM documents
                WHERE collection = ?
                ORDER BY created_at ASC, id ASC
                LIMIT ? OFFSET ?
                """,
                (collection, safe_limit, (safe_page - 1) * safe_limit),
            ).fetchall()
        total = int(total_row["c"]) if total_row else 0
        return DocumentPage(
            docs=[self._to_document(row) for row in rows],
            page=safe_page,
            total_pages=max(1, math.ceil(total / safe_limit)) if total else 0,
        )

    def count(self, collection: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM documents WHERE collection = ?",
                (collection,),
            ).fetchone()
        return int(row["c"]) if row else 0

    @staticmethod
    def _to_document(row) -> SourceDocument:
        return SourceDocument(
            collection=row["collection"],
            id=row["id"],
            data=json.loads(row["data_json"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
