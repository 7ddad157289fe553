from __future__ import annotations

import argparse
from typing import Any

from rich.table import Table

from vectorsync.application.services.project_service import ProjectService
from vectorsync.application.services.search_service import VectorSearchService
from vectorsync.cli.context import CLIContext
from vectorsync.core.errors import ValidationError
from vectorsync.infrastructure.db.repos.embedding_repo import EmbeddingRepo
from vectorsync.infrastructure.pools import load_pools
from vectorsync.infrastructure.vector.qdrant_store import QdrantVectorStore


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("search", help="Semantic search over a knowledge pool")
    parser.add_argument("pool")
    parser.add_argument("--query", required=True)
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument(
        "--where",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Equality filter on embedding columns or extension fields (repeatable)",
    )
    parser.set_defaults(handler=run)


def _parse_where(items: list[str]) -> dict[str, Any]:
    where: dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"--where expects KEY=VALUE, got {item!r}")
        key = key.strip()
        # Chunk indices are stored as integers.
        where[key] = int(value) if key == "chunk_index" and value.strip().isdigit() else value
    return where


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    service = VectorSearchService(
        pools=load_pools(ctx.paths),
        embedding_repo=EmbeddingRepo(ctx.paths.db_path),
        vector_store=QdrantVectorStore(storage_path=ctx.paths.qdrant_dir),
    )
    hits = service.search(args.pool, args.query, limit=args.limit, where=_parse_where(args.where))

    table = Table(title=f"Search: {args.query}")
    table.add_column("Score", justify="right")
    table.add_column("Document")
    table.add_column("Chunk", justify="right")
    table.add_column("Text", overflow="fold")
    for hit in hits:
        table.add_row(f"{hit.score:.4f}", f"{hit.source_collection}:{hit.doc_id}", str(hit.chunk_index), hit.chunk_text)
    ctx.console.print(table)
    return 0
