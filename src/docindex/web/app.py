from __future__ import annotations

import json
import logging
import queue
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse, StreamingResponse

from docindex.core.config import AppPaths, IndexSettings
from docindex.core.errors import DocIndexError
from docindex.core.time import now_utc_iso
from docindex.infrastructure.vector.embeddings import Embedder
from docindex.server.mcp_server import attach_sse
from docindex.server.tools import ReindexArgs, ToolServer, build_tool_server

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    "validation_error": 400,
    "not_found": 404,
    "io_error": 422,
    "embedding_error": 502,
    "store_error": 503,
    "configuration_error": 500,
    "internal_error": 500,
}


def create_app(
    paths: AppPaths,
    *,
    settings: IndexSettings | None = None,
    embedder: Embedder | None = None,
    tools: ToolServer | None = None,
) -> FastAPI:
    tools = tools or build_tool_server(paths, settings, embedder=embedder)
    app = FastAPI(title="docindex", version="0.1.0")

    def _sse_event(event: str, payload: dict[str, Any]) -> str:
        return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=True)}\n\n"

    def _stream_job(runner: Callable[[Callable[[dict[str, object]], None]], dict[str, Any]]) -> StreamingResponse:
        event_queue: queue.Queue[tuple[str, dict[str, Any]] | None] = queue.Queue()
        emit_seq = 0

        def emit(event: str, payload: dict[str, Any]) -> None:
            nonlocal emit_seq
            emit_seq += 1
            safe_payload = dict(payload or {})
            safe_payload.setdefault("emitted_at", now_utc_iso())
            safe_payload.setdefault("event_seq", emit_seq)
            event_queue.put((event, safe_payload))

        def worker() -> None:
            try:
                payload = runner(lambda update: emit("stage", dict(update)))
                emit("payload", payload)
                emit("done", {"ok": True})
            except DocIndexError as exc:
                emit("error", exc.to_payload())
            except Exception as exc:
                logger.exception("Streamed job failed")
                emit("error", {"kind": DocIndexError.kind, "message": str(exc)})
            finally:
                event_queue.put(None)

        def iterator() -> Iterator[str]:
            while True:
                item = event_queue.get()
                if item is None:
                    break
                event, payload = item
                yield _sse_event(event, payload)

        threading.Thread(target=worker, daemon=True).start()
        return StreamingResponse(
            iterator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        collections = tools.store.list_collections()
        return {
            "ok": True,
            "db_path": str(paths.db_path),
            "dimension": tools.store.dimension,
            "metric": tools.store.metric,
            "tools": tools.tool_names(),
            "collections": [
                {"name": c.name, "documents": c.documents, "chunks": c.chunks} for c in collections
            ],
        }

    @app.get("/api/tools")
    def api_tools() -> dict[str, Any]:
        return {"tools": tools.list_tools()}

    @app.post("/api/tools/{name}")
    async def api_call_tool(name: str, arguments: dict[str, Any] | None = Body(default=None)) -> JSONResponse:
        outcome = await tools.call(name, arguments or {})
        if outcome.ok:
            return JSONResponse(content={"ok": True, "result": outcome.result})
        kind = (outcome.error or {}).get("kind", DocIndexError.kind)
        return JSONResponse(status_code=_STATUS_BY_KIND.get(kind, 500), content={"ok": False, "error": outcome.error})

    @app.post("/api/reindex/stream")
    def api_reindex_stream(req: ReindexArgs) -> StreamingResponse:
        source_path = Path(req.source_path).expanduser()
        return _stream_job(
            lambda progress_callback: tools.indexer.reconcile(
                req.collection,
                source_path,
                force=req.force,
                progress_callback=progress_callback,
            ).to_dict()
        )

    attach_sse(app, tools)
    return app
