from __future__ import annotations

from dataclasses import replace

from vectorsync.domain.models.provider import BatchSubmission, BulkEmbeddingInput, OnChunk, PollResult


class BufferedBatchProvider:
    """Flush-after-N ``add_chunk`` policy on top of a provider's ``prepare_batch``.

    A full buffer is submitted when the next chunk arrives, and that chunk opens
    the next buffer. On the last chunk a non-full buffer is submitted together
    with it; a full one is submitted alone with ``input_count`` set, so the
    streamer sends the final chunk as a trailing batch of its own.
    """

    def __init__(self, *, batch_size: int) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self._buffer: list[BulkEmbeddingInput] = []

    def reset(self) -> None:
        self._buffer = []

    def add_chunk(self, chunk: BulkEmbeddingInput, *, is_last_chunk: bool) -> BatchSubmission | None:
        if len(self._buffer) >= self.batch_size:
            full = self._buffer
            self._buffer = [] if is_last_chunk else [chunk]
            submission = self.prepare_batch(full)
            if is_last_chunk:
                return replace(submission, input_count=len(full))
            return submission

        self._buffer.append(chunk)
        if not is_last_chunk:
            return None
        pending = self._buffer
        self._buffer = []
        return replace(self.prepare_batch(pending), input_count=len(pending))

    def prepare_batch(self, inputs: list[BulkEmbeddingInput]) -> BatchSubmission:
        raise NotImplementedError

    def poll_or_complete(self, provider_batch_id: str, on_chunk: OnChunk) -> PollResult:
        raise NotImplementedError
