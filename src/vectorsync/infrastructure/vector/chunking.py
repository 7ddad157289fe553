from __future__ import annotations

import re
from typing import Any

from vectorsync.core.hashing import compute_text_digest

DEFAULT_CHUNKING_VERSION = "text-sentence-v1"

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


class TextFieldChunker:
    """Default converter: split one text field into overlapping sentence windows.

    Each entry is ``{"text": ...}`` plus extension fields describing where the
    window came from, so the merged embedding rows can be traced back.
    """

    def __init__(
        self,
        field: str,
        *,
        chunking_version: str = DEFAULT_CHUNKING_VERSION,
        target_chars: int = 1100,
        overlap_chars: int = 180,
        max_chunk_chars: int | None = None,
    ) -> None:
        self.field = field
        self.chunking_version = chunking_version
        self.target_chars = max(300, target_chars)
        self.overlap_chars = max(0, min(overlap_chars, self.target_chars // 2))
        self.max_chunk_chars = max_chunk_chars or int(self.target_chars * 1.4)

    def __call__(self, doc: dict[str, Any]) -> list[dict[str, Any]]:
        value = doc.get(self.field)
        if value is None:
            return []
        text = str(value)
        if not text.strip():
            return []

        chunks: list[dict[str, Any]] = []
        for order, (start, end) in enumerate(self._enforce_max_window_size(self._windows(text), len(text))):
            window_text = text[start:end].strip()
            if not window_text:
                continue
            chunks.append(
                {
                    "text": window_text,
                    "source_field": self.field,
                    "source_ref": f"sentence-window:{order}",
                    "start_offset": start,
                    "end_offset": end,
                    "chunking_version": self.chunking_version,
                    "text_digest_sha256": compute_text_digest(window_text),
                }
            )
        return chunks

    def _windows(self, text: str) -> list[tuple[int, int]]:
        sentences = _sentence_spans(text)
        windows: list[tuple[int, int]] = []
        if len(sentences) <= 1:
            step = max(1, self.target_chars - self.overlap_chars)
            start = 0
            while start < len(text):
                end = min(start + self.target_chars, len(text))
                windows.append((start, end))
                if end >= len(text):
                    break
                start += step
            return windows

        idx = 0
        count = len(sentences)
        while idx < count:
            start, end = sentences[idx]
            j = idx + 1
            while j < count:
                next_end = sentences[j][1]
                if next_end - start > self.target_chars:
                    break
                end = next_end
                j += 1
            windows.append((start, end))

            if j >= count:
                break

            next_idx = j
            while next_idx > idx + 1:
                # Step back over trailing sentences that fit in the overlap budget.
                candidate_start = sentences[next_idx - 1][0]
                if end - candidate_start <= self.overlap_chars:
                    next_idx -= 1
                    continue
                break
            idx = next_idx
        return windows

    def _enforce_max_window_size(self, windows: list[tuple[int, int]], text_len: int) -> list[tuple[int, int]]:
        out: list[tuple[int, int]] = []
        step = max(1, self.target_chars - self.overlap_chars)
        hard_max = max(self.target_chars, self.max_chunk_chars)
        for start, end in windows:
            s = max(0, min(start, text_len))
            e = max(0, min(end, text_len))
            if e <= s:
                continue
            if (e - s) <= hard_max:
                out.append((s, e))
                continue
            cursor = s
            while cursor < e:
                chunk_end = min(cursor + self.target_chars, e)
                out.append((cursor, chunk_end))
                if chunk_end >= e:
                    break
                cursor += step
        return out


def _sentence_spans(text: str) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    cursor = 0
    for match in _SENTENCE_END.finditer(text):
        if match.start() > cursor:
            spans.append((cursor, match.start()))
        cursor = match.end()
    if cursor < len(text):
        spans.append((cursor, len(text)))
    return spans
