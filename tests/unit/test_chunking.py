from __future__ import annotations

from vectorsync.core.hashing import compute_text_digest
from vectorsync.infrastructure.vector.chunking import TextFieldChunker


def test_short_field_yields_single_chunk() -> None:
    chunker = TextFieldChunker("body")
    chunks = chunker({"id": "1", "body": "Cash at bank increased. Revenue also improved."})

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk["text"] == "Cash at bank increased. Revenue also improved."
    assert chunk["source_field"] == "body"
    assert chunk["source_ref"] == "sentence-window:0"
    assert chunk["chunking_version"] == "text-sentence-v1"
    assert chunk["text_digest_sha256"] == compute_text_digest(chunk["text"])


def test_missing_or_blank_field_yields_nothing() -> None:
    chunker = TextFieldChunker("body")
    assert chunker({"id": "1"}) == []
    assert chunker({"id": "1", "body": "   "}) == []


def test_sentences_are_grouped_into_overlapping_windows() -> None:
    sentence = "This sentence is about forty characters. "
    text = sentence * 30
    chunker = TextFieldChunker("body", target_chars=300, overlap_chars=80)

    chunks = chunker({"body": text})

    assert len(chunks) > 1
    assert all(len(chunk["text"]) <= 300 for chunk in chunks)
    assert all(chunk["text"].endswith(".") for chunk in chunks)
    starts = [chunk["start_offset"] for chunk in chunks]
    assert starts == sorted(starts)
    ends = [chunk["end_offset"] for chunk in chunks]
    assert all(start < end for start, end in zip(starts[1:], ends[:-1]))


def test_chunker_enforces_max_window_size() -> None:
    chunker = TextFieldChunker("body", target_chars=900, overlap_chars=100, max_chunk_chars=1200)
    chunks = chunker({"body": "A" * 5000})

    assert len(chunks) > 1
    assert all(len(chunk["text"]) <= 1200 for chunk in chunks)
    assert chunks[-1]["end_offset"] == 5000
