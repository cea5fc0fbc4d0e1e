from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Collection:
    name: str
    source_path: str | None
    embedding_model: str | None
    chunking_signature: str | None
    generation: int
    created_at: str
    updated_at: str


@dataclass(slots=True)
class DocumentRecord:
    id: int
    collection: str
    path: str
    content_hash: str
    mtime: float
    size_bytes: int
    created_at: str
    updated_at: str


@dataclass(slots=True)
class ChunkRecord:
    """A chunk ready to be persisted: text plus its embedding."""

    ordinal: int
    text_content: str
    token_count: int
    embedding: list[float]
    start_offset: int | None = None
    end_offset: int | None = None


@dataclass(slots=True)
class StoredChunk:
    id: int
    document_id: int
    ordinal: int
    text_content: str
    token_count: int
    start_offset: int | None
    end_offset: int | None


@dataclass(slots=True)
class DocumentWithChunks:
    document: DocumentRecord
    chunks: list[StoredChunk] = field(default_factory=list)


@dataclass(slots=True)
class SearchHit:
    chunk_id: int
    document_id: int
    path: str
    ordinal: int
    text_content: str
    start_offset: int | None
    end_offset: int | None
    score: float


@dataclass(slots=True)
class CollectionStats:
    name: str
    source_path: str | None
    embedding_model: str | None
    chunking_signature: str | None
    documents: int
    chunks: int
    created_at: str
    updated_at: str
