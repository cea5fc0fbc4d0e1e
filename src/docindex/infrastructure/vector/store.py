from __future__ import annotations

import fnmatch
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import numpy as np

from docindex.core.errors import (
    DimensionMismatchError,
    NotFoundError,
    SchemaMismatchError,
    StoreError,
    ValidationError,
)
from docindex.core.time import now_utc_iso
from docindex.domain.models.document import (
    ChunkRecord,
    Collection,
    CollectionStats,
    DocumentRecord,
    DocumentWithChunks,
    SearchHit,
    StoredChunk,
)
from docindex.infrastructure.db.sqlite import connection, initialize_schema, transaction

logger = logging.getLogger(__name__)

# Bump when the table layout or the vector encoding changes.
SCHEMA_VERSION = 1
SIMILARITY_METRIC = "cosine"
VECTOR_DTYPE = np.dtype("<f4")


@dataclass(slots=True)
class _CollectionMatrix:
    generation: int
    chunk_ids: np.ndarray
    document_ids: np.ndarray
    paths: list[str]
    ordinals: list[int]
    texts: list[str]
    start_offsets: list[int | None]
    end_offsets: list[int | None]
    vectors: np.ndarray


class VectorStore:
    """SQLite-backed store for documents, chunks and their embeddings.

    One database file holds every collection. Writes to a collection are
    serialised by an in-process lock and by ``BEGIN IMMEDIATE`` across
    processes; each document's chunk set is swapped inside a single
    transaction so readers (WAL snapshots) only ever see the full old or the
    full new set. Vectors are L2-normalised float32 blobs, so the cosine score
    is a plain dot product. Similarity search is exact: the collection matrix
    is loaded once per collection generation and scored with numpy.
    """

    def __init__(self, db_path: Path, *, dimension: int | None = None) -> None:
        if dimension is not None and dimension <= 0:
            raise ValidationError("dimension must be positive")
        self.db_path = db_path
        self._dimension = dimension
        self._write_locks: dict[str, threading.Lock] = {}
        self._write_locks_guard = threading.Lock()
        self._cache: dict[str, _CollectionMatrix] = {}
        self._cache_lock = threading.Lock()
        self._open()

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def metric(self) -> str:
        return SIMILARITY_METRIC

    # -- collections -----------------------------------------------------

    def ensure_collection(
        self,
        collection: str,
        *,
        source_path: str | None = None,
        embedding_model: str | None = None,
        chunking_signature: str | None = None,
    ) -> Collection:
        existing = self.get_collection(collection)
        if existing is not None and all(
            wanted is None or wanted == current
            for wanted, current in (
                (source_path, existing.source_path),
                (embedding_model, existing.embedding_model),
                (chunking_signature, existing.chunking_signature),
            )
        ):
            return existing

        with self._write_transaction(collection, "ensure collection") as conn:
            self._ensure_collection_row(conn, collection)
            conn.execute(
                """
                UPDATE collections
                SET source_path = COALESCE(?, source_path),
                    embedding_model = COALESCE(?, embedding_model),
                    chunking_signature = COALESCE(?, chunking_signature),
                    updated_at = ?
                WHERE name = ?
                """,
                (source_path, embedding_model, chunking_signature, now_utc_iso(), collection),
            )
        created = self.get_collection(collection)
        if created is None:  # pragma: no cover - row written above
            raise StoreError(f"Collection '{collection}' vanished after write.")
        return created

    def get_collection(self, collection: str) -> Collection | None:
        with self._read_connection() as conn:
            row = conn.execute("SELECT * FROM collections WHERE name = ?", (collection,)).fetchone()
        return self._to_collection(row) if row else None

    def list_collections(self) -> list[CollectionStats]:
        with self._read_connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    c.*,
                    (SELECT COUNT(*) FROM documents d WHERE d.collection = c.name) AS document_count,
                    (SELECT COUNT(*) FROM chunks ch WHERE ch.collection = c.name) AS chunk_count
                FROM collections c
                ORDER BY c.name
                """
            ).fetchall()
        return [self._to_stats(row) for row in rows]

    def collection_stats(self, collection: str) -> CollectionStats:
        for stats in self.list_collections():
            if stats.name == collection:
                return stats
        raise NotFoundError(f"Collection not found: {collection}")

    # -- documents -------------------------------------------------------

    def upsert_document(
        self,
        collection: str,
        path: str,
        content_hash: str,
        mtime: float,
        size_bytes: int,
    ) -> int:
        with self._write_transaction(collection, "upsert document") as conn:
            self._ensure_collection_row(conn, collection)
            return self._upsert_document_row(conn, collection, path, content_hash, mtime, size_bytes)

    def replace_chunks(self, document_id: int, chunks: list[ChunkRecord]) -> None:
        rows, dim = self._prepare_chunk_rows(chunks)
        collection = self._collection_for_document(document_id)
        with self._write_transaction(collection, "replace chunks") as conn:
            if conn.execute("SELECT 1 FROM documents WHERE id = ?", (document_id,)).fetchone() is None:
                raise NotFoundError(f"Document not found: {document_id}")
            if dim is not None:
                self._bind_dimension(conn, dim)
            self._replace_chunk_rows(conn, document_id, collection, rows)
            self._bump_generation(conn, collection)
        # Only adopt the dimension once it is committed.
        if dim is not None:
            self._dimension = dim

    def write_document(
        self,
        collection: str,
        path: str,
        content_hash: str,
        mtime: float,
        size_bytes: int,
        chunks: list[ChunkRecord],
    ) -> int:
        """Upsert a document and swap its chunk set in one transaction."""
        rows, dim = self._prepare_chunk_rows(chunks)
        with self._write_transaction(collection, "write document") as conn:
            if dim is not None:
                self._bind_dimension(conn, dim)
            self._ensure_collection_row(conn, collection)
            document_id = self._upsert_document_row(conn, collection, path, content_hash, mtime, size_bytes)
            self._replace_chunk_rows(conn, document_id, collection, rows)
            self._bump_generation(conn, collection)
        if dim is not None:
            self._dimension = dim
        return document_id

    def delete_document(self, document_id: int) -> None:
        collection = self._collection_for_document(document_id)
        with self._write_transaction(collection, "delete document") as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            if not cursor.rowcount:
                raise NotFoundError(f"Document not found: {document_id}")
            self._bump_generation(conn, collection)

    def list_documents(self, collection: str) -> list[DocumentRecord]:
        with self._read_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE collection = ? ORDER BY path",
                (collection,),
            ).fetchall()
        return [self._to_document(row) for row in rows]

    def get_document(self, collection: str, path: str) -> DocumentWithChunks:
        with self._read_connection() as conn, transaction(conn, immediate=False):
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND path = ?",
                (collection, path),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Document not found in collection '{collection}': {path}")
            chunk_rows = conn.execute(
                """
                SELECT id, document_id, ordinal, text_content, token_count, start_offset, end_offset
                FROM chunks
                WHERE document_id = ?
                ORDER BY ordinal
                """,
                (row["id"],),
            ).fetchall()
        return DocumentWithChunks(
            document=self._to_document(row),
            chunks=[self._to_chunk(chunk_row) for chunk_row in chunk_rows],
        )

    def count_chunks(self, collection: str) -> int:
        with self._read_connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS c FROM chunks WHERE collection = ?", (collection,)).fetchone()
        return int(row["c"]) if row else 0

    # -- search ----------------------------------------------------------

    def query(
        self,
        collection: str,
        query_vector: list[float],
        k: int,
        *,
        path_glob: str | None = None,
    ) -> list[SearchHit]:
        if k <= 0:
            raise ValidationError(f"k must be positive, got {k}")
        matrix = self._load_matrix(collection)
        if matrix is None or not len(matrix.chunk_ids):
            return []

        query = self._normalize(np.asarray(query_vector, dtype=np.float32))
        if query.shape != (matrix.vectors.shape[1],):
            raise DimensionMismatchError(
                f"Query vector has dimension {query.size}, store expects {matrix.vectors.shape[1]}."
            )

        if path_glob:
            candidates = np.array(
                [i for i, path in enumerate(matrix.paths) if fnmatch.fnmatch(path, path_glob)],
                dtype=np.int64,
            )
            if not len(candidates):
                return []
        else:
            candidates = np.arange(len(matrix.chunk_ids))

        scores = matrix.vectors[candidates] @ query
        # Descending score, then ascending chunk id (insertion order).
        order = np.lexsort((matrix.chunk_ids[candidates], -scores))[:k]
        hits: list[SearchHit] = []
        for pos in order:
            idx = int(candidates[pos])
            hits.append(
                SearchHit(
                    chunk_id=int(matrix.chunk_ids[idx]),
                    document_id=int(matrix.document_ids[idx]),
                    path=matrix.paths[idx],
                    ordinal=matrix.ordinals[idx],
                    text_content=matrix.texts[idx],
                    start_offset=matrix.start_offsets[idx],
                    end_offset=matrix.end_offsets[idx],
                    score=float(scores[pos]),
                )
            )
        return hits

    def _load_matrix(self, collection: str) -> _CollectionMatrix | None:
        with self._read_connection() as conn, transaction(conn, immediate=False):
            row = conn.execute("SELECT generation FROM collections WHERE name = ?", (collection,)).fetchone()
            if row is None:
                return None
            generation = int(row["generation"])
            with self._cache_lock:
                cached = self._cache.get(collection)
            if cached is not None and cached.generation == generation:
                return cached

            rows = conn.execute(
                """
                SELECT c.id, c.document_id, d.path, c.ordinal, c.text_content,
                       c.start_offset, c.end_offset, c.embedding
                FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE c.collection = ?
                ORDER BY c.id
                """,
                (collection,),
            ).fetchall()

        dim = self._dimension or 0
        if rows:
            vectors = np.vstack([np.frombuffer(r["embedding"], dtype=VECTOR_DTYPE) for r in rows]).astype(np.float32)
        else:
            vectors = np.zeros((0, dim), dtype=np.float32)
        matrix = _CollectionMatrix(
            generation=generation,
            chunk_ids=np.array([r["id"] for r in rows], dtype=np.int64),
            document_ids=np.array([r["document_id"] for r in rows], dtype=np.int64),
            paths=[r["path"] for r in rows],
            ordinals=[int(r["ordinal"]) for r in rows],
            texts=[r["text_content"] for r in rows],
            start_offsets=[r["start_offset"] for r in rows],
            end_offsets=[r["end_offset"] for r in rows],
            vectors=vectors,
        )
        with self._cache_lock:
            current = self._cache.get(collection)
            if current is None or current.generation <= generation:
                self._cache[collection] = matrix
        logger.debug("Loaded %d vectors for collection %s (generation %d)", len(rows), collection, generation)
        return matrix

    # -- internals -------------------------------------------------------

    def _open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with connection(self.db_path) as conn:
                meta = self._read_meta(conn)
                if meta:
                    self._check_meta(meta)
                elif self._has_store_tables(conn):
                    raise SchemaMismatchError(
                        f"{self.db_path} contains document tables but no store metadata; refusing to open it."
                    )
            initialize_schema(self.db_path)
            with connection(self.db_path) as conn, transaction(conn):
                for key, value in (
                    ("schema_version", str(SCHEMA_VERSION)),
                    ("metric", SIMILARITY_METRIC),
                    ("normalized", "1"),
                ):
                    conn.execute("INSERT OR IGNORE INTO store_meta (key, value) VALUES (?, ?)", (key, value))
                if self._dimension is not None:
                    self._bind_dimension(conn, self._dimension)
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open vector store {self.db_path}: {exc}") from exc

    @staticmethod
    def _read_meta(conn: sqlite3.Connection) -> dict[str, str]:
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'store_meta'"
        ).fetchone()
        if exists is None:
            return {}
        return {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM store_meta")}

    @staticmethod
    def _has_store_tables(conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name IN ('documents', 'chunks')"
        ).fetchone()
        return row is not None

    def _check_meta(self, meta: dict[str, str]) -> None:
        version = meta.get("schema_version")
        if version != str(SCHEMA_VERSION):
            raise SchemaMismatchError(
                f"{self.db_path} has schema version {version}, this build reads version {SCHEMA_VERSION}."
            )
        if meta.get("metric", SIMILARITY_METRIC) != SIMILARITY_METRIC or meta.get("normalized", "1") != "1":
            raise SchemaMismatchError(
                f"{self.db_path} was written with metric={meta.get('metric')} "
                f"normalized={meta.get('normalized')}; expected {SIMILARITY_METRIC} with normalised vectors."
            )
        stored_dim = meta.get("dimension")
        if stored_dim is None:
            return
        if self._dimension is None:
            self._dimension = int(stored_dim)
        elif int(stored_dim) != self._dimension:
            raise DimensionMismatchError(
                f"{self.db_path} stores {stored_dim}-dimensional vectors, embedder produces {self._dimension}."
            )

    @staticmethod
    def _bind_dimension(conn: sqlite3.Connection, dim: int) -> None:
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'dimension'").fetchone()
        if row is None:
            conn.execute("INSERT INTO store_meta (key, value) VALUES ('dimension', ?)", (str(dim),))
        elif int(row["value"]) != dim:
            raise DimensionMismatchError(f"Store holds {row['value']}-dimensional vectors, got {dim}.")

    def _prepare_chunk_rows(
        self, chunks: list[ChunkRecord]
    ) -> tuple[list[tuple[int, int | None, int | None, int, str, bytes]], int | None]:
        rows: list[tuple[int, int | None, int | None, int, str, bytes]] = []
        seen_ordinals: set[int] = set()
        dim = self._dimension
        for chunk in chunks:
            if not chunk.text_content or not chunk.text_content.strip():
                raise ValidationError(f"Chunk {chunk.ordinal} has empty text.")
            if chunk.ordinal < 0 or chunk.ordinal in seen_ordinals:
                raise ValidationError(f"Chunk ordinal {chunk.ordinal} is negative or repeated.")
            seen_ordinals.add(chunk.ordinal)

            vector = np.asarray(chunk.embedding, dtype=np.float32)
            if vector.ndim != 1 or vector.size == 0:
                raise DimensionMismatchError(f"Chunk {chunk.ordinal} embedding is not a flat vector.")
            if dim is None:
                dim = int(vector.size)
            elif vector.size != dim:
                raise DimensionMismatchError(
                    f"Chunk {chunk.ordinal} embedding has dimension {vector.size}, store expects {dim}."
                )
            if not np.all(np.isfinite(vector)):
                raise ValidationError(f"Chunk {chunk.ordinal} embedding contains non-finite values.")
            rows.append(
                (
                    chunk.ordinal,
                    chunk.start_offset,
                    chunk.end_offset,
                    chunk.token_count,
                    chunk.text_content,
                    self._normalize(vector).astype(VECTOR_DTYPE).tobytes(),
                )
            )
        return rows, (dim if rows else None)

    @staticmethod
    def _normalize(vector: np.ndarray) -> np.ndarray:
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            return vector
        return vector / norm

    def _collection_for_document(self, document_id: int) -> str:
        with self._read_connection() as conn:
            row = conn.execute("SELECT collection FROM documents WHERE id = ?", (document_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Document not found: {document_id}")
        return str(row["collection"])

    @staticmethod
    def _ensure_collection_row(conn: sqlite3.Connection, collection: str) -> None:
        now = now_utc_iso()
        conn.execute(
            """
            INSERT OR IGNORE INTO collections (name, generation, created_at, updated_at)
            VALUES (?, 0, ?, ?)
            """,
            (collection, now, now),
        )

    @staticmethod
    def _upsert_document_row(
        conn: sqlite3.Connection,
        collection: str,
        path: str,
        content_hash: str,
        mtime: float,
        size_bytes: int,
    ) -> int:
        now = now_utc_iso()
        row = conn.execute(
            "SELECT id, content_hash FROM documents WHERE collection = ? AND path = ?",
            (collection, path),
        ).fetchone()
        if row is None:
            cursor = conn.execute(
                """
                INSERT INTO documents (collection, path, content_hash, mtime, size_bytes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (collection, path, content_hash, mtime, size_bytes, now, now),
            )
            return int(cursor.lastrowid)

        conn.execute(
            """
            UPDATE documents
            SET content_hash = ?, mtime = ?, size_bytes = ?, updated_at = ?
            WHERE id = ?
            """,
            (content_hash, mtime, size_bytes, now, row["id"]),
        )
        return int(row["id"])

    def _replace_chunk_rows(
        self,
        conn: sqlite3.Connection,
        document_id: int,
        collection: str,
        rows: list[tuple[int, int | None, int | None, int, str, bytes]],
    ) -> None:
        conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
        self._insert_chunk_rows(conn, document_id, collection, rows)

    @staticmethod
    def _insert_chunk_rows(
        conn: sqlite3.Connection,
        document_id: int,
        collection: str,
        rows: list[tuple[int, int | None, int | None, int, str, bytes]],
    ) -> None:
        conn.executemany(
            """
            INSERT INTO chunks (
                document_id,
                collection,
                ordinal,
                start_offset,
                end_offset,
                token_count,
                text_content,
                embedding
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (document_id, collection, ordinal, start, end, tokens, text, blob)
                for ordinal, start, end, tokens, text, blob in rows
            ],
        )

    @staticmethod
    def _bump_generation(conn: sqlite3.Connection, collection: str) -> None:
        conn.execute(
            "UPDATE collections SET generation = generation + 1, updated_at = ? WHERE name = ?",
            (now_utc_iso(), collection),
        )

    def _writer_lock(self, collection: str) -> threading.Lock:
        with self._write_locks_guard:
            lock = self._write_locks.get(collection)
            if lock is None:
                lock = threading.Lock()
                self._write_locks[collection] = lock
            return lock

    @contextmanager
    def _write_transaction(self, collection: str, action: str) -> Iterator[sqlite3.Connection]:
        with self._writer_lock(collection):
            try:
                with connection(self.db_path) as conn, transaction(conn):
                    yield conn
            except sqlite3.Error as exc:
                raise StoreError(f"{action} failed for collection '{collection}': {exc}") from exc

    @contextmanager
    def _read_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            with connection(self.db_path) as conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(f"Read from {self.db_path} failed: {exc}") from exc

    @staticmethod
    def _to_collection(row) -> Collection:
        return Collection(
            name=row["name"],
            source_path=row["source_path"],
            embedding_model=row["embedding_model"],
            chunking_signature=row["chunking_signature"],
            generation=int(row["generation"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_stats(row) -> CollectionStats:
        return CollectionStats(
            name=row["name"],
            source_path=row["source_path"],
            embedding_model=row["embedding_model"],
            chunking_signature=row["chunking_signature"],
            documents=int(row["document_count"] or 0),
            chunks=int(row["chunk_count"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_document(row) -> DocumentRecord:
        return DocumentRecord(
            id=int(row["id"]),
            collection=row["collection"],
            path=row["path"],
            content_hash=row["content_hash"],
            mtime=float(row["mtime"]),
            size_bytes=int(row["size_bytes"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_chunk(row) -> StoredChunk:
        return StoredChunk(
            id=int(row["id"]),
            document_id=int(row["document_id"]),
            ordinal=int(row["ordinal"]),
            text_content=row["text_content"],
            token_count=int(row["token_count"]),
            start_offset=row["start_offset"],
            end_offset=row["end_offset"],
        )
