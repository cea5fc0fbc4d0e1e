from __future__ import annotations

import argparse
from pathlib import Path

from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from docindex.application.services.project_service import ProjectService
from docindex.cli.context import CLIContext
from docindex.server.tools import build_tool_server


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("index", help="Reconcile a collection with a documentation directory")
    parser.add_argument("collection")
    parser.add_argument("source", type=Path)
    parser.add_argument("--force", action="store_true", help="Re-chunk and re-embed every document")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).init_project()
    tools = build_tool_server(ctx.paths, ctx.settings)

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        TimeElapsedColumn(),
        console=ctx.console,
    )

    with progress:
        task = progress.add_task(f"Indexing {args.source} into {args.collection}...", total=None)
        summary = tools.indexer.reconcile(
            args.collection,
            args.source,
            force=args.force,
            progress_callback=lambda update: progress.update(task, description=str(update.get("detail", ""))),
        )
        progress.update(task, description=f"Indexed {args.collection}")

    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Collection: {summary.collection}",
                    f"Source: {summary.source_path}",
                    f"Scanned: {summary.scanned}",
                    f"Added: {summary.added}",
                    f"Updated: {summary.updated}",
                    f"Deleted: {summary.deleted}",
                    f"Unchanged: {summary.unchanged}",
                    f"Failed: {summary.failed}",
                    f"Chunks written: {summary.chunks_written}",
                    f"Rebuilt: {'yes' if summary.rebuilt else 'no'}",
                    f"Elapsed: {summary.elapsed_seconds:.2f}s",
                ]
            ),
            title="Index Summary",
        )
    )

    issues = [*summary.warnings, *summary.errors]
    if issues:
        table = Table(title=f"Issues ({len(issues)})")
        table.add_column("Kind")
        table.add_column("Path")
        table.add_column("Message", overflow="fold")
        for issue in issues:
            table.add_row(issue.kind, issue.path or "", issue.message)
        ctx.console.print(table)

    return 1 if summary.failed else 0
