from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from starlette.requests import Request
from starlette.responses import Response

from docindex.server.tools import ToolServer

logger = logging.getLogger(__name__)

SERVER_NAME = "docindex"


class ToolCallFailed(Exception):
    """Carries a ``{kind, message}`` payload back to the client as an error result."""

    def __init__(self, error: dict[str, str]) -> None:
        super().__init__(json.dumps(error, ensure_ascii=False))
        self.error = error


def build_mcp_server(tools: ToolServer) -> Server:
    server: Server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name=tool["name"],
                description=tool["description"],
                inputSchema=tool["input_schema"],
                outputSchema=tool["output_schema"],
            )
            for tool in tools.list_tools()
        ]

    @server.call_tool()
    async def call_tool(
        name: str, arguments: dict[str, Any] | None
    ) -> tuple[list[types.TextContent], dict[str, Any]]:
        outcome = await tools.call(name, arguments or {})
        if not outcome.ok:
            # The server wraps raised exceptions into an isError result.
            raise ToolCallFailed(outcome.error or {"kind": "internal_error", "message": "unknown failure"})
        result = outcome.result or {}
        # Text for older clients, structured content checked against outputSchema.
        return [types.TextContent(type="text", text=json.dumps(result, ensure_ascii=False))], result

    return server


async def run_stdio(tools: ToolServer) -> None:
    server = build_mcp_server(tools)
    logger.info("Serving %d tools over stdio", len(tools.tool_names()))
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await tools.drain()


def attach_sse(app: FastAPI, tools: ToolServer) -> None:
    """Expose the tool protocol over SSE at ``GET /sse`` and ``POST /messages/``."""
    server = build_mcp_server(tools)
    sse = SseServerTransport("/messages/")

    async def handle_sse(request: Request) -> Response:
        async with sse.connect_sse(request.scope, request.receive, request._send) as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
        return Response()

    app.add_route("/sse", handle_sse, methods=["GET"])
    app.mount("/messages/", app=sse.handle_post_message)
