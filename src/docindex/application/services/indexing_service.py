from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable

from docindex.core.config import DEFAULT_EXTENSIONS
from docindex.core.errors import EmbeddingError, ValidationError
from docindex.domain.models.document import ChunkRecord, Collection, DocumentRecord
from docindex.infrastructure.corpus.walker import CorpusFile, walk_corpus
from docindex.infrastructure.vector.chunking import ChunkDraft, TextChunker
from docindex.infrastructure.vector.embeddings import Embedder
from docindex.infrastructure.vector.store import VectorStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexIssue:
    kind: str
    path: str | None
    message: str


@dataclass(slots=True)
class ReconcileSummary:
    collection: str
    source_path: str
    scanned: int = 0
    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    failed: int = 0
    chunks_written: int = 0
    writes: int = 0
    rebuilt: bool = False
    elapsed_seconds: float = 0.0
    warnings: list[IndexIssue] = field(default_factory=list)
    errors: list[IndexIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class _PendingDocument:
    file: CorpusFile
    is_new: bool
    drafts: list[ChunkDraft]
    vectors: list[list[float] | None]
    error: str | None = None


# (document index within the pending list, chunk ordinal)
_WorkItem = tuple[int, int]


class IndexingService:
    """Brings a collection in line with the files currently under its source path."""

    def __init__(
        self,
        *,
        store: VectorStore,
        embedder: Embedder,
        chunker: TextChunker,
        batch_size: int = 64,
        workers: int = 4,
        extensions: tuple[str, ...] = DEFAULT_EXTENSIONS,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.chunker = chunker
        self.batch_size = max(1, batch_size)
        self.workers = max(1, workers)
        self.extensions = extensions
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def reconcile(
        self,
        collection: str,
        source_path: Path,
        *,
        force: bool = False,
        progress_callback: Callable[[dict[str, object]], None] | None = None,
    ) -> ReconcileSummary:
        if not collection or not collection.strip():
            raise ValidationError("Collection name must not be empty.")

        with self._collection_lock(collection):
            return self._reconcile_locked(collection, Path(source_path), force, progress_callback)

    def _reconcile_locked(
        self,
        collection: str,
        source_path: Path,
        force: bool,
        progress_callback: Callable[[dict[str, object]], None] | None,
    ) -> ReconcileSummary:
        def emit(payload: dict[str, object]) -> None:
            if progress_callback is None:
                return
            progress_callback(payload)

        started = time.perf_counter()
        emit({"stage": "scan", "state": "active", "detail": f"Scanning {source_path}"})
        scan = walk_corpus(source_path, extensions=self.extensions, workers=self.workers)
        summary = ReconcileSummary(collection=collection, source_path=str(scan.root), scanned=len(scan.files))
        for warning in scan.warnings:
            summary.warnings.append(IndexIssue(kind=warning.kind, path=None, message=str(warning)))

        existing = self.store.get_collection(collection)
        stored = {doc.path: doc for doc in self.store.list_documents(collection)}
        summary.rebuilt = force or self._needs_rebuild(existing)
        if summary.rebuilt and stored:
            logger.info("Rebuilding collection %s (force=%s)", collection, force)

        pending: list[_PendingDocument] = []
        for corpus_file in scan.files:
            doc = stored.get(corpus_file.path)
            if doc is not None and not summary.rebuilt and doc.content_hash == corpus_file.content_hash:
                summary.unchanged += 1
                continue
            drafts = self.chunker.split(corpus_file.text)
            pending.append(
                _PendingDocument(
                    file=corpus_file,
                    is_new=doc is None,
                    drafts=drafts,
                    vectors=[None] * len(drafts),
                )
            )

        seen = {f.path for f in scan.files} | set(scan.unreadable)
        removed: list[DocumentRecord] = [doc for path, doc in sorted(stored.items()) if path not in seen]
        emit(
            {
                "stage": "diff",
                "state": "done",
                "detail": (
                    f"{len(pending)} to index, {len(removed)} to delete, {summary.unchanged} unchanged"
                ),
            }
        )

        for doc in removed:
            self.store.delete_document(doc.id)
            summary.deleted += 1
            summary.writes += 1
            logger.debug("Deleted %s from %s", doc.path, collection)

        if pending:
            emit({"stage": "embed", "state": "active", "detail": f"Embedding {len(pending)} document(s)"})
            self._embed_pending(pending)

        for item in sorted(pending, key=lambda p: p.file.path):
            if item.error is not None:
                summary.failed += 1
                summary.errors.append(IndexIssue(kind=EmbeddingError.kind, path=item.file.path, message=item.error))
                continue
            chunks = [
                ChunkRecord(
                    ordinal=draft.ordinal,
                    text_content=draft.text_content,
                    token_count=draft.token_count_est,
                    embedding=vector,
                    start_offset=draft.start_offset,
                    end_offset=draft.end_offset,
                )
                for draft, vector in zip(item.drafts, item.vectors)
                if vector is not None
            ]
            self.store.write_document(
                collection,
                item.file.path,
                item.file.content_hash,
                item.file.mtime,
                item.file.size_bytes,
                chunks,
            )
            summary.writes += 1
            summary.chunks_written += len(chunks)
            if item.is_new:
                summary.added += 1
            else:
                summary.updated += 1

        # A rebuild that left failures keeps the old policy recorded so the next pass retries it.
        if not (summary.rebuilt and summary.failed):
            if self._collection_outdated(existing, scan.root):
                self.store.ensure_collection(
                    collection,
                    source_path=str(scan.root),
                    embedding_model=self.embedder.model_name,
                    chunking_signature=self.chunker.signature,
                )
                summary.writes += 1

        summary.elapsed_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            "Reconciled %s: +%d ~%d -%d =%d failed=%d chunks=%d in %.2fs",
            collection,
            summary.added,
            summary.updated,
            summary.deleted,
            summary.unchanged,
            summary.failed,
            summary.chunks_written,
            summary.elapsed_seconds,
        )
        emit(
            {
                "stage": "done",
                "state": "error" if summary.failed else "done",
                "detail": f"{summary.writes} write(s), {summary.failed} failure(s)",
            }
        )
        return summary

    def _needs_rebuild(self, existing: Collection | None) -> bool:
        if existing is None:
            return False
        if existing.embedding_model and existing.embedding_model != self.embedder.model_name:
            return True
        if existing.chunking_signature and existing.chunking_signature != self.chunker.signature:
            return True
        return False

    def _collection_outdated(self, existing: Collection | None, root: Path) -> bool:
        if existing is None:
            return True
        return (
            existing.source_path != str(root)
            or existing.embedding_model != self.embedder.model_name
            or existing.chunking_signature != self.chunker.signature
        )

    def _embed_pending(self, pending: list[_PendingDocument]) -> None:
        items: list[_WorkItem] = [
            (doc_idx, draft.ordinal) for doc_idx, doc in enumerate(pending) for draft in doc.drafts
        ]
        groups = [items[i : i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        if not groups:
            return

        with ThreadPoolExecutor(max_workers=min(self.workers, len(groups))) as executor:
            results = list(executor.map(lambda group: self._embed_group(pending, group), groups))

        for outcome in results:
            for (doc_idx, ordinal), vector, error in outcome:
                doc = pending[doc_idx]
                if error is not None:
                    if doc.error is None:
                        doc.error = error
                    continue
                doc.vectors[ordinal] = vector

    def _embed_group(
        self,
        pending: list[_PendingDocument],
        group: list[_WorkItem],
    ) -> list[tuple[_WorkItem, list[float] | None, str | None]]:
        try:
            vectors = self._embed_items(pending, group)
            return [(item, vector, None) for item, vector in zip(group, vectors)]
        except EmbeddingError as exc:
            logger.warning("Embedding batch of %d chunk(s) failed, retrying in halves: %s", len(group), exc)

        mid = max(1, len(group) // 2)
        halves = [group[:mid], group[mid:]] if len(group) > 1 else [group]
        out: list[tuple[_WorkItem, list[float] | None, str | None]] = []
        for half in halves:
            try:
                vectors = self._embed_items(pending, half)
            except EmbeddingError as exc:
                logger.warning("Embedding retry of %d chunk(s) failed: %s", len(half), exc)
                out.extend((item, None, str(exc)) for item in half)
                continue
            out.extend((item, vector, None) for item, vector in zip(half, vectors))
        return out

    def _embed_items(self, pending: list[_PendingDocument], items: list[_WorkItem]) -> list[list[float]]:
        texts = [pending[doc_idx].drafts[ordinal].text_content for doc_idx, ordinal in items]
        vectors = self.embedder.embed_texts(texts)
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Embedder returned {len(vectors)} vectors for {len(texts)} chunks.")
        return vectors

    def _collection_lock(self, collection: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(collection)
            if lock is None:
                lock = threading.Lock()
                self._locks[collection] = lock
            return lock
