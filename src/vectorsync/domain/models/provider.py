from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Sequence


@dataclass(slots=True, frozen=True)
class BulkEmbeddingInput:
    id: str
    text: str


@dataclass(slots=True, frozen=True)
class BatchSubmission:
    provider_batch_id: str
    status: str = "queued"
    # Number of offered chunks this submission covers, when the provider knows it.
    input_count: int | None = None


@dataclass(slots=True, frozen=True)
class BulkEmbeddingOutput:
    id: str
    embedding: Sequence[float] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.embedding is not None and len(self.embedding) > 0


@dataclass(slots=True, frozen=True)
class PollResult:
    status: str
    error: str | None = None


OnChunk = Callable[[BulkEmbeddingOutput], None]


class BulkEmbeddingProvider(Protocol):
    """Contract every bulk embedding backend satisfies.

    ``add_chunk`` is the flush decision: it sees every chunk of a run in
    discovery order and returns a submission whenever it sent a batch to the
    provider. ``prepare_batch`` submits an explicit list of inputs and is used
    for trailing flushes and retries. ``poll_or_complete`` reports the batch
    status and, once the provider is done, streams every output through
    ``on_chunk`` before returning.

    Providers may also expose ``on_error(provider_batch_ids, error,
    failed_chunk_data)`` and ``release(provider_batch_ids)``; both are looked up
    with ``getattr`` and are optional.
    """

    def add_chunk(self, chunk: BulkEmbeddingInput, *, is_last_chunk: bool) -> BatchSubmission | None: ...

    def prepare_batch(self, inputs: list[BulkEmbeddingInput]) -> BatchSubmission: ...

    def poll_or_complete(self, provider_batch_id: str, on_chunk: OnChunk) -> PollResult: ...
