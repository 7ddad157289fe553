from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"


class TextEmbedder(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL_NAME
    device: str = "auto"
    encode_batch_size: int = 128
    normalize: bool = True

    @classmethod
    def from_pool_options(cls, options: Mapping[str, Any]) -> EmbeddingConfig:
        """Read the embedder keys of a ``[pools.<name>]`` table."""
        return cls(
            model_name=str(options.get("model_name") or DEFAULT_MODEL_NAME),
            device=str(options.get("device") or "auto"),
            encode_batch_size=max(1, int(options.get("encode_batch_size", 128))),
            normalize=bool(options.get("normalize", True)),
        )


def embed_in_slices(embedder: TextEmbedder, texts: list[str], slice_size: int) -> list[list[float]]:
    """Embed ``texts`` a slice at a time and check that one vector came back per text."""
    slice_size = max(1, slice_size)
    out: list[list[float]] = []
    for start in range(0, len(texts), slice_size):
        out.extend(embedder.embed_texts(texts[start : start + slice_size]))
    if len(out) != len(texts):
        raise RuntimeError(f"Embedder returned {len(out)} vectors for {len(texts)} texts")
    dims = {len(vector) for vector in out}
    if len(dims) > 1:
        raise RuntimeError(f"Embedder returned vectors of mixed sizes: {sorted(dims)}")
    return out


class SentenceTransformerEmbedder:
    """Local embedder used by the ``local`` bulk provider and for search queries."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._model = None
        self._embedding_dim: int | None = None

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def embedding_dim(self) -> int:
        if self._embedding_dim is None:
            self._load_model()
            if self._embedding_dim is None:
                raise RuntimeError(f"Unable to determine embedding dimension of {self.model_name}.")
        return self._embedding_dim

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        self._load_model()
        vectors = self._model.encode(
            texts,
            batch_size=self.config.encode_batch_size,
            normalize_embeddings=self.config.normalize,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        rows = vectors.tolist() if hasattr(vectors, "tolist") else [list(v) for v in vectors]
        out = [[float(x) for x in row] for row in rows]
        if out and self._embedding_dim is None:
            self._embedding_dim = len(out[0])
        return out

    def _load_model(self) -> None:
        if self._model is not None:
            return
        try:
            import torch
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:  # pragma: no cover - dependency guard
            raise RuntimeError(
                "Local embedding dependencies are missing. Install with `pip install -e '.[local]'`."
            ) from exc

        if "OMP_NUM_THREADS" not in os.environ:
            os.environ["OMP_NUM_THREADS"] = "8"

        device = self._resolve_device(torch)
        logger.info("Loading embedding model %s on %s", self.model_name, device)
        self._model = SentenceTransformer(self.model_name, device=device)
        dim = self._model.get_sentence_embedding_dimension()
        self._embedding_dim = int(dim) if dim else None

    def _resolve_device(self, torch_module) -> str:
        configured = (self.config.device or "auto").strip().lower()
        if configured != "auto":
            return configured
        if torch_module.cuda.is_available():
            return "cuda"
        mps = getattr(torch_module.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps"
        return "cpu"
