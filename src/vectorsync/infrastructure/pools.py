from __future__ import annotations

import importlib
import logging
import tomllib
from pathlib import Path
from typing import Any, Callable

from vectorsync.core.config import AppPaths
from vectorsync.core.errors import ConfigurationError
from vectorsync.domain.models.knowledge_pool import CollectionSource, KnowledgePool
from vectorsync.infrastructure.vector.chunking import TextFieldChunker

logger = logging.getLogger(__name__)

LOCAL_PROVIDER = "local"
DEFAULT_BATCH_SIZE = 64


def resolve_callable(reference: str, *, what: str) -> Callable[..., Any]:
    """Import ``package.module:attribute`` and return the attribute."""
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigurationError(f"{what} must look like 'package.module:attribute', got {reference!r}")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import module {module_name!r} for {what}: {exc}") from exc
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigurationError(f"{reference!r} has no attribute {part!r} ({what})") from exc
    if not callable(target):
        raise ConfigurationError(f"{reference!r} is not callable ({what})")
    return target


def load_pools(paths: AppPaths, *, config_path: Path | None = None) -> dict[str, KnowledgePool]:
    """Read knowledge pools from ``pools.toml``; a missing file means no pools."""
    path = config_path or paths.pools_path
    if not path.exists():
        return {}
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid pool config {path}: {exc}") from exc
    pools_raw = raw.get("pools") or {}
    if not isinstance(pools_raw, dict):
        raise ConfigurationError(f"[pools] in {path} must be a table")
    return {name: build_pool(name, options, paths) for name, options in pools_raw.items()}


def build_pool(name: str, options: dict[str, Any], paths: AppPaths) -> KnowledgePool:
    if not isinstance(options, dict):
        raise ConfigurationError(f"Pool {name!r} must be a table")
    version = options.get("embedding_version")
    if not isinstance(version, str) or not version.strip():
        raise ConfigurationError(f"Pool {name!r} requires a non-empty embedding_version")

    collections: dict[str, CollectionSource] = {}
    for collection_name, collection_opts in (options.get("collections") or {}).items():
        collections[collection_name] = _build_collection(name, collection_name, collection_opts or {})
    if not collections:
        raise ConfigurationError(f"Pool {name!r} declares no collections")

    provider, query_embedder = _build_provider(name, options, paths)
    return KnowledgePool(
        name=name,
        embedding_version=version.strip(),
        collections=collections,
        provider=provider,
        query_embedder=query_embedder,
    )


def _build_collection(pool: str, collection: str, options: dict[str, Any]) -> CollectionSource:
    to_chunks_ref = options.get("to_chunks")
    text_field = options.get("text_field")
    if to_chunks_ref:
        to_chunks = resolve_callable(str(to_chunks_ref), what=f"{pool}.{collection}.to_chunks")
    elif text_field:
        to_chunks = TextFieldChunker(
            str(text_field),
            target_chars=int(options.get("target_chars", 1100)),
            overlap_chars=int(options.get("overlap_chars", 180)),
        )
    else:
        raise ConfigurationError(f"Collection {pool}.{collection} needs either to_chunks or text_field")

    should_embed = None
    if options.get("should_embed"):
        should_embed = resolve_callable(str(options["should_embed"]), what=f"{pool}.{collection}.should_embed")
    return CollectionSource(to_chunks=to_chunks, should_embed=should_embed)


def _build_provider(name: str, options: dict[str, Any], paths: AppPaths):
    reference = options.get("provider")
    if not reference:
        return None, None

    if reference == LOCAL_PROVIDER:
        from vectorsync.infrastructure.providers.batch_store import SqliteBatchStore
        from vectorsync.infrastructure.providers.local_provider import LocalEmbedderProvider
        from vectorsync.infrastructure.vector.embeddings import EmbeddingConfig, SentenceTransformerEmbedder

        embedder = SentenceTransformerEmbedder(EmbeddingConfig.from_pool_options(options))
        provider = LocalEmbedderProvider(
            embedder=embedder,
            batch_size=int(options.get("batch_size", DEFAULT_BATCH_SIZE)),
            store=SqliteBatchStore(paths.db_path, provider=f"local:{name}"),
        )
        return provider, embedder

    factory = resolve_callable(str(reference), what=f"{name}.provider")
    provider = factory(name, options, paths)
    query_embedder = getattr(provider, "query_embedder", None) or getattr(provider, "embedder", None)
    if options.get("query_embedder"):
        query_embedder = resolve_callable(str(options["query_embedder"]), what=f"{name}.query_embedder")(name, options, paths)
    logger.debug("Loaded provider %s for pool %s", reference, name)
    return provider, query_embedder
