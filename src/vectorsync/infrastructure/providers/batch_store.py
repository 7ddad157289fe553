from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Protocol

from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.provider import BulkEmbeddingInput
from vectorsync.infrastructure.db.sqlite import get_connection


class BatchStore(Protocol):
    """Provider-side storage for submitted batch inputs, keyed by provider batch id."""

    def put(self, provider_batch_id: str, inputs: list[BulkEmbeddingInput]) -> None: ...

    def get(self, provider_batch_id: str) -> list[BulkEmbeddingInput] | None: ...

    def delete(self, provider_batch_id: str) -> None: ...


class InMemoryBatchStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches: dict[str, list[BulkEmbeddingInput]] = {}

    def put(self, provider_batch_id: str, inputs: list[BulkEmbeddingInput]) -> None:
        with self._lock:
            self._batches[provider_batch_id] = list(inputs)

    def get(self, provider_batch_id: str) -> list[BulkEmbeddingInput] | None:
        with self._lock:
            inputs = self._batches.get(provider_batch_id)
            return list(inputs) if inputs is not None else None

    def delete(self, provider_batch_id: str) -> None:
        with self._lock:
            self._batches.pop(provider_batch_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._batches)


class SqliteBatchStore:
    """Durable variant; survives worker restarts between submit and poll."""

    def __init__(self, db_path: Path, *, provider: str = "local") -> None:
        self.db_path = db_path
        self.provider = provider

    def put(self, provider_batch_id: str, inputs: list[BulkEmbeddingInput]) -> None:
        payload = json.dumps([{"id": item.id, "text": item.text} for item in inputs], ensure_ascii=True)
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO provider_batches (id, provider, inputs_json, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET inputs_json = excluded.inputs_json
                """,
                (provider_batch_id, self.provider, payload, now_utc_iso()),
            )
            conn.commit()

    def get(self, provider_batch_id: str) -> list[BulkEmbeddingInput] | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT inputs_json FROM provider_batches WHERE id = ? AND provider = ?",
                (provider_batch_id, self.provider),
            ).fetchone()
        if row is None:
            return None
        return [BulkEmbeddingInput(id=str(item["id"]), text=str(item["text"])) for item in json.loads(row["inputs_json"])]

    def delete(self, provider_batch_id: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "DELETE FROM provider_batches WHERE id = ? AND provider = ?",
                (provider_batch_id, self.provider),
            )
            conn.commit()
