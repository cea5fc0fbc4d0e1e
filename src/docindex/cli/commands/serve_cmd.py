from __future__ import annotations

import argparse
import asyncio

from docindex.application.services.project_service import ProjectService
from docindex.cli.context import CLIContext
from docindex.server.mcp_server import run_stdio
from docindex.server.tools import build_tool_server
from docindex.web.app import create_app


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("serve", help="Serve the search tools to an MCP client")
    parser.add_argument("--transport", choices=("stdio", "sse"), default="stdio")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).init_project()
    tools = build_tool_server(ctx.paths, ctx.settings)

    if args.transport == "stdio":
        asyncio.run(run_stdio(tools))
        return 0

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required for SSE mode. Install project dependencies.") from exc

    app = create_app(ctx.paths, tools=tools)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0
