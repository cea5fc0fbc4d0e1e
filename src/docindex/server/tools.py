from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from docindex.application.services.indexing_service import IndexingService
from docindex.application.services.retrieval_service import RetrievalService, format_hits_for_agent
from docindex.core.config import AppPaths, IndexSettings, load_settings
from docindex.core.errors import DocIndexError, ValidationError
from docindex.infrastructure.vector.chunking import TextChunker
from docindex.infrastructure.vector.embeddings import Embedder, EmbeddingConfig, SentenceTransformerEmbedder
from docindex.infrastructure.vector.store import VectorStore

logger = logging.getLogger(__name__)


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ReindexArgs(_ToolArgs):
    collection: str = Field(min_length=1, description="Collection to reconcile.")
    source_path: str = Field(min_length=1, description="Directory holding the documentation files.")
    force: bool = Field(default=False, description="Re-chunk and re-embed every document.")


class SearchArgs(_ToolArgs):
    collection: str = Field(min_length=1)
    query: str = Field(min_length=1, description="Natural-language question or keywords.")
    k: int = Field(default=10, ge=1, description="Maximum number of chunks to return.")
    path_glob: str | None = Field(default=None, description="Only search documents whose path matches.")


class GetDocumentArgs(_ToolArgs):
    collection: str = Field(min_length=1)
    path: str = Field(min_length=1, description="Document path relative to the corpus root.")


class ListDocumentsArgs(_ToolArgs):
    collection: str = Field(min_length=1)


class ListCollectionsArgs(_ToolArgs):
    pass


class IssueOut(BaseModel):
    kind: str
    path: str | None = None
    message: str


class ReindexResult(BaseModel):
    collection: str
    source_path: str
    scanned: int
    added: int
    updated: int
    deleted: int
    unchanged: int
    failed: int
    chunks_written: int
    writes: int
    rebuilt: bool
    elapsed_seconds: float
    warnings: list[IssueOut]
    errors: list[IssueOut]


class SearchHitOut(BaseModel):
    path: str
    ordinal: int
    text: str
    score: float
    start_offset: int | None = None
    end_offset: int | None = None


class SearchResult(BaseModel):
    collection: str
    query: str
    hits: list[SearchHitOut]
    context: str


class ChunkOut(BaseModel):
    ordinal: int
    text: str
    token_count: int
    start_offset: int | None = None
    end_offset: int | None = None


class DocumentOut(BaseModel):
    collection: str
    path: str
    content_hash: str
    mtime: float
    size_bytes: int
    chunks: list[ChunkOut]


class DocumentSummaryOut(BaseModel):
    path: str
    content_hash: str
    mtime: float
    size_bytes: int


class ListDocumentsResult(BaseModel):
    collection: str
    documents: list[DocumentSummaryOut]


class CollectionOut(BaseModel):
    name: str
    source_path: str | None = None
    embedding_model: str | None = None
    chunking_signature: str | None = None
    documents: int
    chunks: int
    updated_at: str


class ListCollectionsResult(BaseModel):
    collections: list[CollectionOut]


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    handler: Callable[[Any], BaseModel]
    # Shielded tools keep running when the caller goes away.
    shielded: bool = False


@dataclass(slots=True)
class ToolOutcome:
    ok: bool
    result: dict[str, Any] | None = None
    error: dict[str, str] | None = None

    @classmethod
    def failure(cls, kind: str, message: str) -> ToolOutcome:
        return cls(ok=False, error={"kind": kind, "message": message})

    def to_payload(self) -> dict[str, Any]:
        if self.ok:
            return self.result or {}
        return {"error": self.error}


class ToolServer:
    """Validates tool calls and dispatches them to the indexing and retrieval services."""

    def __init__(
        self,
        *,
        store: VectorStore,
        indexer: IndexingService,
        retriever: RetrievalService,
    ) -> None:
        self.store = store
        self.indexer = indexer
        self.retriever = retriever
        self._tools = {spec.name: spec for spec in self._build_tools()}
        self._background: set[asyncio.Task] = set()

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "input_schema": spec.input_model.model_json_schema(),
                "output_schema": spec.output_model.model_json_schema(),
            }
            for spec in self._tools.values()
        ]

    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> ToolOutcome:
        spec = self._tools.get(name)
        if spec is None:
            return ToolOutcome.failure(ValidationError.kind, f"Unknown tool: {name}")
        try:
            args = spec.input_model.model_validate(arguments or {})
        except PydanticValidationError as exc:
            return ToolOutcome.failure(ValidationError.kind, _describe_validation_error(exc))

        try:
            if spec.shielded:
                result = await self._run_shielded(name, spec, args)
            else:
                result = await asyncio.to_thread(spec.handler, args)
        except DocIndexError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolOutcome(ok=False, error=exc.to_payload())
        except asyncio.CancelledError:
            logger.info("Tool call %s cancelled by caller", name)
            raise
        except Exception as exc:
            logger.exception("Tool %s raised an unexpected error", name)
            return ToolOutcome.failure(DocIndexError.kind, f"{type(exc).__name__}: {exc}")
        return ToolOutcome(ok=True, result=result.model_dump(mode="json"))

    async def _run_shielded(self, name: str, spec: ToolSpec, args: BaseModel) -> BaseModel:
        task = asyncio.create_task(asyncio.to_thread(spec.handler, args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Nobody awaits the task any more; report how it ends.
            task.add_done_callback(partial(_log_orphan_result, name))
            raise

    async def drain(self) -> None:
        """Wait for shielded calls still running after their callers left."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _build_tools(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name="reindex",
                description=(
                    "Bring a collection in line with the documentation files under source_path. "
                    "Only new or changed files are re-embedded; missing files are removed."
                ),
                input_model=ReindexArgs,
                output_model=ReindexResult,
                handler=self._reindex,
                shielded=True,
            ),
            ToolSpec(
                name="search",
                description="Semantic search over a collection. Returns the best-matching chunks with scores.",
                input_model=SearchArgs,
                output_model=SearchResult,
                handler=self._search,
            ),
            ToolSpec(
                name="get_document",
                description="Return a stored document and its chunks in order.",
                input_model=GetDocumentArgs,
                output_model=DocumentOut,
                handler=self._get_document,
            ),
            ToolSpec(
                name="list_documents",
                description="List the documents indexed in a collection.",
                input_model=ListDocumentsArgs,
                output_model=ListDocumentsResult,
                handler=self._list_documents,
            ),
            ToolSpec(
                name="list_collections",
                description="List collections with their document and chunk counts.",
                input_model=ListCollectionsArgs,
                output_model=ListCollectionsResult,
                handler=self._list_collections,
            ),
        ]

    def _reindex(self, args: ReindexArgs) -> ReindexResult:
        summary = self.indexer.reconcile(args.collection, Path(args.source_path), force=args.force)
        return ReindexResult.model_validate(summary.to_dict())

    def _search(self, args: SearchArgs) -> SearchResult:
        hits = self.retriever.search(args.collection, args.query, args.k, path_glob=args.path_glob)
        return SearchResult(
            collection=args.collection,
            query=args.query,
            hits=[
                SearchHitOut(
                    path=hit.path,
                    ordinal=hit.ordinal,
                    text=hit.text_content,
                    score=hit.score,
                    start_offset=hit.start_offset,
                    end_offset=hit.end_offset,
                )
                for hit in hits
            ],
            context=format_hits_for_agent(hits),
        )

    def _get_document(self, args: GetDocumentArgs) -> DocumentOut:
        stored = self.store.get_document(args.collection, args.path)
        doc = stored.document
        return DocumentOut(
            collection=doc.collection,
            path=doc.path,
            content_hash=doc.content_hash,
            mtime=doc.mtime,
            size_bytes=doc.size_bytes,
            chunks=[
                ChunkOut(
                    ordinal=chunk.ordinal,
                    text=chunk.text_content,
                    token_count=chunk.token_count,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                )
                for chunk in stored.chunks
            ],
        )

    def _list_documents(self, args: ListDocumentsArgs) -> ListDocumentsResult:
        return ListDocumentsResult(
            collection=args.collection,
            documents=[
                DocumentSummaryOut(
                    path=doc.path,
                    content_hash=doc.content_hash,
                    mtime=doc.mtime,
                    size_bytes=doc.size_bytes,
                )
                for doc in self.store.list_documents(args.collection)
            ],
        )

    def _list_collections(self, args: ListCollectionsArgs) -> ListCollectionsResult:
        return ListCollectionsResult(
            collections=[
                CollectionOut(
                    name=stats.name,
                    source_path=stats.source_path,
                    embedding_model=stats.embedding_model,
                    chunking_signature=stats.chunking_signature,
                    documents=stats.documents,
                    chunks=stats.chunks,
                    updated_at=stats.updated_at,
                )
                for stats in self.store.list_collections()
            ]
        )


def _log_orphan_result(name: str, task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("Detached tool call %s was cancelled", name)
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Detached tool call %s failed: %s", name, exc, exc_info=exc)
    else:
        logger.info("Detached tool call %s finished", name)


def _describe_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "Invalid arguments: " + "; ".join(parts)


def build_tool_server(
    paths: AppPaths,
    settings: IndexSettings | None = None,
    *,
    embedder: Embedder | None = None,
) -> ToolServer:
    settings = settings or load_settings()
    embedder = embedder or SentenceTransformerEmbedder(
        EmbeddingConfig(
            model_name=settings.embedding_model,
            device=settings.device,
            batch_size=settings.batch_size,
        )
    )
    store = VectorStore(paths.db_path)
    chunker = TextChunker(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)
    return ToolServer(
        store=store,
        indexer=IndexingService(
            store=store,
            embedder=embedder,
            chunker=chunker,
            batch_size=settings.batch_size,
            workers=settings.workers,
            extensions=settings.extensions,
        ),
        retriever=RetrievalService(store=store, embedder=embedder, max_k=settings.max_k),
    )
