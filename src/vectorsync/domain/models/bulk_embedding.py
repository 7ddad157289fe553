from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_CANCELED = "canceled"

RUN_STATUSES = (STATUS_QUEUED, STATUS_RUNNING, STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELED)
TERMINAL_STATUSES = frozenset({STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELED})


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(slots=True, frozen=True)
class FailedChunk:
    collection: str
    document_id: str
    chunk_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailedChunk:
        return cls(
            collection=str(data["collection"]),
            document_id=str(data["document_id"]),
            chunk_index=int(data["chunk_index"]),
        )


@dataclass(slots=True)
class BulkEmbeddingRun:
    id: str
    pool: str
    embedding_version: str
    status: str
    total_batches: int
    inputs: int
    succeeded: int
    failed: int
    error: str | None
    failed_chunk_data: list[FailedChunk] | None
    submitted_at: str | None
    completed_at: str | None
    created_at: str


@dataclass(slots=True)
class BulkEmbeddingBatch:
    id: str
    run_id: str
    batch_index: int
    provider_batch_id: str
    status: str
    input_count: int
    succeeded_count: int
    failed_count: int
    error: str | None
    retry_count: int
    submitted_at: str | None
    completed_at: str | None


@dataclass(slots=True)
class ChunkMetadata:
    id: str
    run_id: str
    batch_id: str | None
    input_id: str
    text: str
    source_collection: str
    doc_id: str
    chunk_index: int
    embedding_version: str
    extension_fields: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def as_failed_chunk(self) -> FailedChunk:
        return FailedChunk(
            collection=self.source_collection,
            document_id=self.doc_id,
            chunk_index=self.chunk_index,
        )
