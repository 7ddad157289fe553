from __future__ import annotations

from pathlib import Path

from vectorsync.domain.models.provider import BulkEmbeddingInput
from vectorsync.infrastructure.db.sqlite import initialize_schema
from vectorsync.infrastructure.providers.batch_store import InMemoryBatchStore, SqliteBatchStore
from vectorsync.infrastructure.providers.local_provider import LocalEmbedderProvider


def _inputs(*texts: str) -> list[BulkEmbeddingInput]:
    return [BulkEmbeddingInput(id=f"posts:{idx}:0", text=text) for idx, text in enumerate(texts)]


def test_add_chunk_flushes_after_batch_size(fake_embedder) -> None:
    provider = LocalEmbedderProvider(embedder=fake_embedder, batch_size=2)
    items = _inputs("a", "b", "c", "d", "e")

    results = [provider.add_chunk(item, is_last_chunk=idx == len(items) - 1) for idx, item in enumerate(items)]

    assert results[0] is None
    assert results[1] is None
    assert results[2] is not None and results[2].input_count == 2
    assert results[3] is None
    assert results[4] is not None and results[4].input_count == 2
    assert len(provider.store) == 2


def test_last_chunk_joins_partial_buffer(fake_embedder) -> None:
    provider = LocalEmbedderProvider(embedder=fake_embedder, batch_size=3)
    first, second = _inputs("a", "b")

    assert provider.add_chunk(first, is_last_chunk=False) is None
    submission = provider.add_chunk(second, is_last_chunk=True)

    assert submission is not None
    assert submission.input_count == 2
    assert [item.text for item in provider.store.get(submission.provider_batch_id)] == ["a", "b"]


def test_poll_streams_outputs_and_flags_empty_text(fake_embedder) -> None:
    provider = LocalEmbedderProvider(embedder=fake_embedder, batch_size=10, encode_batch_size=1)
    submission = provider.prepare_batch(_inputs("hello", "  ", "world"))
    outputs = []

    result = provider.poll_or_complete(submission.provider_batch_id, outputs.append)

    assert result.status == "succeeded"
    assert [output.id for output in outputs] == ["posts:0:0", "posts:1:0", "posts:2:0"]
    assert outputs[0].embedding == [5.0, 2.0, 1.0]
    assert outputs[1].error == "Empty chunk text"
    assert fake_embedder.calls == [["hello"], ["world"]]


def test_poll_unknown_batch_fails(fake_embedder) -> None:
    provider = LocalEmbedderProvider(embedder=fake_embedder)
    result = provider.poll_or_complete("local-missing", lambda output: None)
    assert result.status == "failed"
    assert "Unknown local batch" in (result.error or "")


def test_embedder_failure_fails_the_batch() -> None:
    class _BrokenEmbedder:
        def embed_texts(self, texts):
            raise RuntimeError("CUDA out of memory")

    provider = LocalEmbedderProvider(embedder=_BrokenEmbedder())
    submission = provider.prepare_batch(_inputs("a"))

    result = provider.poll_or_complete(submission.provider_batch_id, lambda output: None)

    assert result.status == "failed"
    assert result.error == "CUDA out of memory"


def test_release_drops_stored_inputs(fake_embedder) -> None:
    store = InMemoryBatchStore()
    provider = LocalEmbedderProvider(embedder=fake_embedder, store=store)
    submission = provider.prepare_batch(_inputs("a"))

    provider.release([submission.provider_batch_id])

    assert len(store) == 0


def test_sqlite_batch_store_roundtrip_is_scoped_by_provider(tmp_path: Path) -> None:
    db_path = tmp_path / "vectorsync.db"
    initialize_schema(db_path)
    store = SqliteBatchStore(db_path, provider="local:default")
    other = SqliteBatchStore(db_path, provider="local:archive")

    store.put("local-1", _inputs("a", "b"))

    assert [item.text for item in store.get("local-1")] == ["a", "b"]
    assert other.get("local-1") is None
    store.delete("local-1")
    assert store.get("local-1") is None
