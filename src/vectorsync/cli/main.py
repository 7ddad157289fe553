from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from vectorsync.cli.commands import bulk_cmd, docs_cmd, init_cmd, search_cmd, web_cmd
from vectorsync.cli.context import CLIContext
from vectorsync.core.config import load_paths
from vectorsync.core.errors import VectorSyncError
from vectorsync.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vectorsync",
        description="Bulk re-embedding of document collections into vector search pools",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root to use for .vectorsync data (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_cmd.register(subparsers)
    docs_cmd.register(subparsers)
    bulk_cmd.register(subparsers)
    search_cmd.register(subparsers)
    web_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    console = Console()

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, console=console)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except VectorSyncError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
