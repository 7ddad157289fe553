from __future__ import annotations

import argparse

from rich.panel import Panel
from rich.table import Table

from vectorsync.application.services.bulk_embed_service import BulkEmbedService, build_bulk_embed_service
from vectorsync.application.services.project_service import ProjectService
from vectorsync.cli.context import CLIContext
from vectorsync.domain.models.bulk_embedding import BulkEmbeddingBatch
from vectorsync.infrastructure.pools import load_pools
from vectorsync.infrastructure.vector.qdrant_store import QdrantVectorStore


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("bulk", help="Bulk re-embedding runs")
    bulk_subparsers = parser.add_subparsers(dest="bulk_command", required=True)

    start = bulk_subparsers.add_parser("start", help="Queue a bulk embedding run for a knowledge pool")
    start.add_argument("pool")
    start.add_argument("--work", action="store_true", help="Drain the task queue after queueing the run")
    start.add_argument("--max-tasks", type=int, default=1000)
    start.set_defaults(handler=run_start)

    work = bulk_subparsers.add_parser("work", help="Process due bulk embedding tasks")
    work.add_argument("--max-tasks", type=int, default=1000)
    work.add_argument("--queue", default=None, help="Only process tasks of this queue")
    work.set_defaults(handler=run_work)

    status = bulk_subparsers.add_parser("status", help="Show a run, or recent runs")
    status.add_argument("run_id", nargs="?")
    status.add_argument("--pool", default=None)
    status.add_argument("--limit", type=int, default=20)
    status.set_defaults(handler=run_status)

    failed = bulk_subparsers.add_parser("failed", help="List failed batches of a run")
    failed.add_argument("run_id")
    failed.set_defaults(handler=run_failed)

    retry = bulk_subparsers.add_parser("retry", help="Retry one failed batch")
    retry.add_argument("batch_id")
    retry.set_defaults(handler=run_retry)

    cancel = bulk_subparsers.add_parser("cancel", help="Cancel a run, or one batch with --batch")
    cancel.add_argument("run_id", nargs="?")
    cancel.add_argument("--batch", dest="batch_id", default=None)
    cancel.set_defaults(handler=run_cancel)


def _service(ctx: CLIContext) -> BulkEmbedService:
    ProjectService(ctx.paths).require_initialized()
    return build_bulk_embed_service(
        ctx.paths,
        load_pools(ctx.paths),
        vector_store=QdrantVectorStore(storage_path=ctx.paths.qdrant_dir),
    )


def _batch_table(title: str, batches: list[BulkEmbeddingBatch]) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Batch ID")
    table.add_column("Provider Batch")
    table.add_column("Status")
    table.add_column("Inputs", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Error", overflow="fold")
    for batch in batches:
        table.add_row(
            str(batch.batch_index),
            batch.id,
            batch.provider_batch_id,
            batch.status,
            str(batch.input_count),
            str(batch.succeeded_count),
            str(batch.failed_count),
            str(batch.retry_count),
            batch.error or "",
        )
    return table


def run_start(args: argparse.Namespace, ctx: CLIContext) -> int:
    service = _service(ctx)
    result = service.start_bulk_embed(args.pool)
    if result.conflict:
        ctx.console.print(f"[yellow]{result.message}[/yellow]")
        return 1
    ctx.console.print(f"[green]Queued run[/green] {result.run_id} for pool {args.pool}")
    if args.work:
        processed = service.task_queue.run_pending(max_tasks=args.max_tasks)
        ctx.console.print(f"Processed {processed} task(s)")
        view = service.get_run_status(result.run_id)
        ctx.console.print(f"Run status: [bold]{view.run.status}[/bold]")
    return 0


def run_work(args: argparse.Namespace, ctx: CLIContext) -> int:
    service = _service(ctx)
    recovered = service.task_queue.recover_inflight_tasks()
    if recovered:
        ctx.console.print(f"[yellow]Requeued {recovered} interrupted task(s)[/yellow]")
    processed = service.task_queue.run_pending(max_tasks=args.max_tasks, queue_name=args.queue)
    counts = service.task_queue.counts()
    ctx.console.print(
        f"Processed {processed} task(s); queued={counts.get('queued', 0)} "
        f"done={counts.get('done', 0)} failed={counts.get('failed', 0)}"
    )
    return 0


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    service = _service(ctx)
    if not args.run_id:
        table = Table(title="Bulk Embedding Runs")
        table.add_column("Run ID")
        table.add_column("Pool")
        table.add_column("Version")
        table.add_column("Status")
        table.add_column("Inputs", justify="right")
        table.add_column("OK", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Completed")
        for run in service.list_runs(pool=args.pool, limit=args.limit):
            table.add_row(
                run.id,
                run.pool,
                run.embedding_version,
                run.status,
                str(run.inputs),
                str(run.succeeded),
                str(run.failed),
                run.completed_at or "",
            )
        ctx.console.print(table)
        return 0

    view = service.get_run_status(args.run_id)
    run = view.run
    lines = [
        f"Pool: {run.pool} ({run.embedding_version})",
        f"Status: {run.status}",
        f"Batches: {run.total_batches}",
        f"Inputs: {run.inputs}  succeeded: {run.succeeded}  failed: {run.failed}",
        f"Submitted: {run.submitted_at or '-'}  completed: {run.completed_at or '-'}",
        f"Pending chunk metadata: {view.pending_metadata}",
    ]
    if run.error:
        lines.append(f"Error: {run.error}")
    if run.failed_chunk_data:
        lines.append(f"Failed chunks: {len(run.failed_chunk_data)}")
    ctx.console.print(Panel.fit("\n".join(lines), title=f"Run {run.id}"))
    if view.batches:
        ctx.console.print(_batch_table("Batches", view.batches))
    return 0


def run_failed(args: argparse.Namespace, ctx: CLIContext) -> int:
    batches = _service(ctx).list_failed_batches(args.run_id)
    if not batches:
        ctx.console.print("[green]No failed batches[/green]")
        return 0
    ctx.console.print(_batch_table(f"Failed batches of {args.run_id}", batches))
    return 0


def run_retry(args: argparse.Namespace, ctx: CLIContext) -> int:
    result = _service(ctx).retry_failed_batch(args.batch_id)
    if result.retried:
        ctx.console.print(
            f"[green]Resubmitted[/green] batch {result.batch_id} as {result.provider_batch_id}; "
            "run 'vectorsync bulk work' to process it"
        )
    else:
        ctx.console.print(f"[yellow]{result.message or 'Nothing to retry'}[/yellow] (status {result.status})")
    return 0


def run_cancel(args: argparse.Namespace, ctx: CLIContext) -> int:
    service = _service(ctx)
    if args.batch_id:
        batch = service.cancel_batch(args.batch_id)
        ctx.console.print(f"Batch {batch.id}: {batch.status}")
        return 0
    if not args.run_id:
        ctx.console.print("[red]Pass a run id or --batch[/red]")
        return 2
    run = service.cancel_run(args.run_id)
    ctx.console.print(f"Run {run.id}: {run.status}")
    return 0
