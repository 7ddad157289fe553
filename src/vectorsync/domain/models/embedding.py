from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class SourceDocument:
    collection: str
    id: str
    data: dict[str, Any]
    created_at: str
    updated_at: str

    def to_payload(self) -> dict[str, Any]:
        """Flatten into the mapping handed to converters and filters."""
        payload = dict(self.data)
        payload["id"] = self.id
        payload["created_at"] = self.created_at
        payload["updated_at"] = self.updated_at
        return payload


@dataclass(slots=True)
class DocumentPage:
    docs: list[SourceDocument]
    page: int
    total_pages: int


@dataclass(slots=True)
class EmbeddingRecord:
    id: str
    pool: str
    source_collection: str
    doc_id: str
    chunk_index: int
    chunk_text: str
    embedding_version: str
    embedding_dim: int | None
    bulk_run_id: str | None
    extension_fields: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
