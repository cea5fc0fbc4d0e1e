from __future__ import annotations

import argparse

from rich.panel import Panel
from rich.table import Table

from docindex.application.services.project_service import ProjectService
from docindex.cli.context import CLIContext
from docindex.core.errors import ConfigurationError
from docindex.core.time import epoch_to_utc_iso
from docindex.infrastructure.vector.store import VectorStore
from docindex.server.tools import build_tool_server


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    search = subparsers.add_parser("search", help="Semantic search over a collection")
    search.add_argument("collection")
    search.add_argument("query")
    search.add_argument("-k", "--limit", dest="k", type=int, default=None)
    search.add_argument("--path-glob", default=None, help="Only search documents whose path matches")
    search.set_defaults(handler=run_search)

    show = subparsers.add_parser("show", help="Show a stored document and its chunks")
    show.add_argument("collection")
    show.add_argument("path")
    show.set_defaults(handler=run_show)

    docs = subparsers.add_parser("docs", help="List documents in a collection")
    docs.add_argument("collection")
    docs.set_defaults(handler=run_docs)

    status = subparsers.add_parser("status", help="Show collections and index statistics")
    status.set_defaults(handler=run_status)


def _require_initialized_project(ctx: CLIContext) -> None:
    if not ProjectService(ctx.paths).is_initialized():
        raise ConfigurationError(
            f"No index found. Run 'docindex init' or 'docindex index' first in {ctx.paths.project_root}"
        )


def run_search(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    tools = build_tool_server(ctx.paths, ctx.settings)
    k = args.k if args.k is not None else ctx.settings.default_k
    hits = tools.retriever.search(args.collection, args.query, k, path_glob=args.path_glob)

    table = Table(title=f"Search Hits ({len(hits)})")
    table.add_column("Score")
    table.add_column("Path")
    table.add_column("Chunk")
    table.add_column("Text", overflow="fold")
    for hit in hits:
        table.add_row(f"{hit.score:.4f}", hit.path, str(hit.ordinal), hit.text_content[:400])
    ctx.console.print(table)
    return 0


def run_show(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    stored = VectorStore(ctx.paths.db_path).get_document(args.collection, args.path)
    doc = stored.document
    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Path: {doc.path}",
                    f"Hash: {doc.content_hash}",
                    f"Size: {doc.size_bytes} bytes",
                    f"Modified: {epoch_to_utc_iso(doc.mtime)}",
                    f"Chunks: {len(stored.chunks)}",
                    f"Updated: {doc.updated_at}",
                ]
            ),
            title=f"Document ({doc.collection})",
        )
    )
    for chunk in stored.chunks:
        ctx.console.print(f"[bold]#{chunk.ordinal}[/bold] [{chunk.start_offset}:{chunk.end_offset}]")
        ctx.console.print(chunk.text_content, markup=False)
    return 0


def run_docs(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    documents = VectorStore(ctx.paths.db_path).list_documents(args.collection)

    table = Table(title=f"Documents in {args.collection} ({len(documents)})")
    table.add_column("Path")
    table.add_column("Hash")
    table.add_column("Bytes", justify="right")
    table.add_column("Modified")
    table.add_column("Indexed")
    for doc in documents:
        table.add_row(doc.path, doc.content_hash, str(doc.size_bytes), epoch_to_utc_iso(doc.mtime), doc.updated_at)
    ctx.console.print(table)
    return 0


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    store = VectorStore(ctx.paths.db_path)
    collections = store.list_collections()

    table = Table(title="Collections")
    table.add_column("Name")
    table.add_column("Documents", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Model")
    table.add_column("Chunking")
    table.add_column("Source", overflow="fold")
    table.add_column("Updated")
    for stats in collections:
        table.add_row(
            stats.name,
            str(stats.documents),
            str(stats.chunks),
            stats.embedding_model or "",
            stats.chunking_signature or "",
            stats.source_path or "",
            stats.updated_at,
        )
    ctx.console.print(table)
    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Database: {ctx.paths.db_path}",
                    f"Dimension: {store.dimension if store.dimension is not None else 'unset'}",
                    f"Metric: {store.metric}",
                ]
            ),
            title="Vector Store",
        )
    )
    return 0
