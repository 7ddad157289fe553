from __future__ import annotations

import argparse
import json
from pathlib import Path

from rich.table import Table

from vectorsync.application.services.project_service import ProjectService
from vectorsync.cli.context import CLIContext
from vectorsync.core.errors import ValidationError
from vectorsync.infrastructure.db.repos.document_repo import DocumentRepo


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("docs", help="Manage source documents")
    docs_subparsers = parser.add_subparsers(dest="docs_command", required=True)

    put = docs_subparsers.add_parser("put", help="Create or update a document")
    put.add_argument("collection")
    put.add_argument("doc_id")
    source = put.add_mutually_exclusive_group(required=True)
    source.add_argument("--json", dest="data_json", help="Document body as a JSON object")
    source.add_argument("--file", type=Path, help="Path to a JSON file holding the document body")
    put.set_defaults(handler=run_put)

    list_parser = docs_subparsers.add_parser("list", help="List documents of a collection")
    list_parser.add_argument("collection")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.set_defaults(handler=run_list)

    delete = docs_subparsers.add_parser("delete", help="Delete a document")
    delete.add_argument("collection")
    delete.add_argument("doc_id")
    delete.set_defaults(handler=run_delete)


def _repo(ctx: CLIContext) -> DocumentRepo:
    ProjectService(ctx.paths).require_initialized()
    return DocumentRepo(ctx.paths.db_path)


def _load_body(args: argparse.Namespace) -> dict:
    raw = args.data_json if args.data_json is not None else args.file.read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Document body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Document body must be a JSON object")
    return data


def run_put(args: argparse.Namespace, ctx: CLIContext) -> int:
    document = _repo(ctx).upsert(args.collection, args.doc_id, _load_body(args))
    ctx.console.print(f"[green]Saved[/green] {document.collection}:{document.id} (updated {document.updated_at})")
    return 0


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    page = _repo(ctx).find_page(args.collection, args.page, args.limit)

    table = Table(title=f"{args.collection} (page {page.page}/{max(page.total_pages, 1)})")
    table.add_column("ID")
    table.add_column("Updated")
    table.add_column("Data", overflow="fold")
    for document in page.docs:
        table.add_row(document.id, document.updated_at, json.dumps(document.data, ensure_ascii=False))
    ctx.console.print(table)
    return 0


def run_delete(args: argparse.Namespace, ctx: CLIContext) -> int:
    if not _repo(ctx).delete(args.collection, args.doc_id):
        ctx.console.print(f"[yellow]No such document[/yellow] {args.collection}:{args.doc_id}")
        return 1
    ctx.console.print(f"[green]Deleted[/green] {args.collection}:{args.doc_id}")
    return 0
