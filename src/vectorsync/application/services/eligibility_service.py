from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from vectorsync.core.time import parse_iso
from vectorsync.domain.models.bulk_embedding import BulkEmbeddingRun
from vectorsync.domain.models.embedding import SourceDocument
from vectorsync.domain.models.knowledge_pool import KnowledgePool
from vectorsync.infrastructure.db.repos.document_repo import DocumentRepo
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo
from vectorsync.infrastructure.db.repos.run_repo import RunRepo

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EligibleDocument:
    collection: str
    document: SourceDocument


class EligibilityScanner:
    """Decides which source documents a run has to (re-)embed.

    Without a usable baseline (no prior successful run, or one under a different
    embedding version) every document is eligible. Otherwise a document is
    eligible when it changed after the baseline completed or has no embedding
    under the current version. Collections are read page by page.
    """

    def __init__(
        self,
        *,
        document_repo: DocumentRepo,
        embedding_repo: EmbeddingRepo,
        run_repo: RunRepo,
        page_size: int = 50,
    ) -> None:
        self.document_repo = document_repo
        self.embedding_repo = embedding_repo
        self.run_repo = run_repo
        self.page_size = max(1, page_size)

    def find_baseline(self, pool_name: str, *, exclude_run_id: str | None = None) -> BulkEmbeddingRun | None:
        return self.run_repo.get_latest_succeeded_run(pool_name, exclude_run_id=exclude_run_id)

    @staticmethod
    def requires_full_rescan(pool: KnowledgePool, baseline: BulkEmbeddingRun | None) -> bool:
        return baseline is None or baseline.embedding_version != pool.embedding_version

    def is_eligible(
        self,
        pool: KnowledgePool,
        collection: str,
        document: SourceDocument,
        baseline: BulkEmbeddingRun | None,
    ) -> bool:
        if self.requires_full_rescan(pool, baseline):
            return True
        baseline_completed = parse_iso(baseline.completed_at)
        updated = parse_iso(document.updated_at)
        if baseline_completed is None or updated is None or updated > baseline_completed:
            return True
        return not self.embedding_repo.exists_for_version(
            pool.name,
            collection,
            document.id,
            pool.embedding_version,
        )

    def iter_eligible(self, pool: KnowledgePool, baseline: BulkEmbeddingRun | None) -> Iterator[EligibleDocument]:
        full = self.requires_full_rescan(pool, baseline)
        for collection, source in pool.collections.items():
            page = 1
            while True:
                result = self.document_repo.find_page(collection, page, self.page_size)
                for document in result.docs:
                    if source.should_embed is not None and not source.should_embed(document.to_payload()):
                        logger.debug("Skipping %s:%s (should_embed returned false)", collection, document.id)
                        continue
                    if full or self.is_eligible(pool, collection, document, baseline):
                        yield EligibleDocument(collection=collection, document=document)
                if result.page >= result.total_pages:
                    break
                page += 1
