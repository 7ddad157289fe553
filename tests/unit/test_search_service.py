from __future__ import annotations

import pytest

from vectorsync.application.services.search_service import VectorSearchService
from vectorsync.core.errors import ConfigurationError, ValidationError


def _section_chunks(doc):
    return [{"text": text, "section": section} for section, text in doc["sections"].items()]


def _indexed_env(bulk_env, scripted_provider, pool_factory):
    provider = scripted_provider()
    pool = pool_factory(provider, to_chunks=_section_chunks)
    env = bulk_env(pool)
    env.documents.upsert("posts", "a", {"sections": {"intro": "aaaa aaaa aaaa", "body": "xyz"}})
    env.documents.upsert("posts", "b", {"sections": {"intro": "ab", "body": "quite a long body of text"}})
    env.run_to_completion()
    service = VectorSearchService(pools=env.service.pools, embedding_repo=env.embeddings, vector_store=env.store)
    return env, service


def test_search_returns_hits_ordered_by_score(bulk_env, scripted_provider, pool_factory) -> None:
    _, service = _indexed_env(bulk_env, scripted_provider, pool_factory)

    hits = service.search("default", "some query", limit=2)

    assert len(hits) == 2
    assert hits[0].score >= hits[1].score
    assert hits[0].chunk_text == "quite a long body of text"
    assert hits[0].extension_fields == {"section": "body"}
    assert hits[0].embedding_version == "v1"


def test_search_filters_on_row_and_extension_fields(bulk_env, scripted_provider, pool_factory) -> None:
    _, service = _indexed_env(bulk_env, scripted_provider, pool_factory)

    by_doc = service.search("default", "q", where={"doc_id": "a"})
    by_section = service.search("default", "q", where={"section": "intro"})

    assert {hit.doc_id for hit in by_doc} == {"a"}
    assert len(by_doc) == 2
    assert {hit.chunk_text for hit in by_section} == {"aaaa aaaa aaaa", "ab"}


def test_search_validation(bulk_env, scripted_provider, pool_factory) -> None:
    env, service = _indexed_env(bulk_env, scripted_provider, pool_factory)

    with pytest.raises(ValidationError):
        service.search("default", "   ")
    with pytest.raises(ConfigurationError, match="Unknown knowledge pool"):
        service.search("missing", "q")

    no_embedder = VectorSearchService(
        pools={"default": pool_factory(None)},
        embedding_repo=env.embeddings,
        vector_store=env.store,
    )
    with pytest.raises(ConfigurationError, match="no query embedder"):
        no_embedder.search("default", "q")
