from __future__ import annotations

import logging
from dataclasses import dataclass, field

from vectorsync.core.errors import PersistenceError
from vectorsync.core.ids import deterministic_uuid, parse_chunk_input_id
from vectorsync.core.time import now_utc_iso
from vectorsync.domain.models.bulk_embedding import BulkEmbeddingRun, ChunkMetadata, FailedChunk
from vectorsync.domain.models.embedding import EmbeddingRecord
from vectorsync.domain.models.provider import BulkEmbeddingOutput
from vectorsync.infrastructure.db.repos.chunk_metadata_repo import ChunkMetadataRepo
from vectorsync.infrastructure.db.repos.document_repo import DocumentRepo
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeSession:
    """Per-poll state shared by every output merged during one polling pass."""

    run_id: str
    pool: str
    embedding_version: str
    seen_documents: set[tuple[str, str]] = field(default_factory=set)
    succeeded: int = 0
    failed: int = 0
    failed_chunks: list[FailedChunk] = field(default_factory=list)

    def record_failure(self, chunk: FailedChunk | None = None) -> None:
        self.failed += 1
        if chunk is not None and chunk not in self.failed_chunks:
            self.failed_chunks.append(chunk)


def embedding_record_id(pool: str, input_id: str) -> str:
    return deterministic_uuid(f"vectorsync:{pool}:{input_id}")


class CompletionMerger:
    def __init__(
        self,
        *,
        document_repo: DocumentRepo,
        embedding_repo: EmbeddingRepo,
        metadata_repo: ChunkMetadataRepo,
        vector_store,
    ) -> None:
        self.document_repo = document_repo
        self.embedding_repo = embedding_repo
        self.metadata_repo = metadata_repo
        self.vector_store = vector_store

    @staticmethod
    def new_session(run: BulkEmbeddingRun) -> MergeSession:
        return MergeSession(run_id=run.id, pool=run.pool, embedding_version=run.embedding_version)

    def merge_output(self, session: MergeSession, output: BulkEmbeddingOutput) -> bool:
        """Merge one provider output; returns True when an embedding is in place for it.

        Chunk-level problems are counted on the session and never raised. Storage
        failures raise ``PersistenceError`` so the whole task can be retried.
        """
        metadata = self.metadata_repo.get(session.run_id, output.id)
        if metadata is None:
            return self._merge_without_metadata(session, output)

        if not output.ok:
            logger.warning(
                "Run %s: provider returned no embedding for %s: %s",
                session.run_id,
                output.id,
                output.error or "missing vector",
            )
            session.record_failure(metadata.as_failed_chunk())
            return False

        if self.document_repo.find_by_id(metadata.source_collection, metadata.doc_id) is None:
            logger.warning(
                "Run %s: source document %s:%s was deleted; skipping chunk %s",
                session.run_id,
                metadata.source_collection,
                metadata.doc_id,
                metadata.chunk_index,
            )
            self.metadata_repo.delete(metadata.id)
            session.record_failure(metadata.as_failed_chunk())
            return False

        document_key = (metadata.source_collection, metadata.doc_id)
        if document_key not in session.seen_documents:
            session.seen_documents.add(document_key)
            self._delete_superseded(session, metadata)

        self._write_embedding(session, metadata, list(output.embedding or []))
        self.metadata_repo.delete(metadata.id)
        session.succeeded += 1
        return True

    def _merge_without_metadata(self, session: MergeSession, output: BulkEmbeddingOutput) -> bool:
        parsed = parse_chunk_input_id(output.id)
        if parsed is not None:
            existing = self.embedding_repo.get_by_key(session.pool, *parsed)
            if (
                existing is not None
                and existing.bulk_run_id == session.run_id
                and existing.embedding_version == session.embedding_version
            ):
                # Redelivered output whose merge already committed.
                session.succeeded += 1
                return True
        logger.warning("Run %s: no chunk metadata for output %s", session.run_id, output.id)
        session.record_failure()
        return False

    def _delete_superseded(self, session: MergeSession, metadata: ChunkMetadata) -> None:
        try:
            self.vector_store.delete_embeddings(
                session.pool,
                metadata.source_collection,
                metadata.doc_id,
                exclude_run_id=session.run_id,
            )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"Failed to delete stale vectors for {metadata.source_collection}:{metadata.doc_id}: {exc}"
            ) from exc
        removed = self.embedding_repo.delete_for_document(
            session.pool,
            metadata.source_collection,
            metadata.doc_id,
            exclude_run_id=session.run_id,
        )
        if removed:
            logger.debug(
                "Run %s: removed %s superseded embedding(s) for %s:%s",
                session.run_id,
                len(removed),
                metadata.source_collection,
                metadata.doc_id,
            )

    def _write_embedding(self, session: MergeSession, metadata: ChunkMetadata, vector: list[float]) -> None:
        record = self.embedding_repo.upsert(
            EmbeddingRecord(
                id=embedding_record_id(session.pool, metadata.input_id),
                pool=session.pool,
                source_collection=metadata.source_collection,
                doc_id=metadata.doc_id,
                chunk_index=metadata.chunk_index,
                chunk_text=metadata.text,
                embedding_version=metadata.embedding_version,
                embedding_dim=len(vector),
                bulk_run_id=session.run_id,
                extension_fields=dict(metadata.extension_fields),
                created_at=now_utc_iso(),
            )
        )
        try:
            self.vector_store.store_embedding(
                session.pool,
                metadata.source_collection,
                metadata.doc_id,
                record.id,
                vector,
                run_id=session.run_id,
                payload={
                    "chunk_index": metadata.chunk_index,
                    "embedding_version": metadata.embedding_version,
                },
            )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to store vector for {metadata.input_id}: {exc}") from exc
