from __future__ import annotations

import logging

from docindex.core.errors import EmbeddingError, ValidationError
from docindex.domain.models.document import SearchHit
from docindex.infrastructure.vector.embeddings import Embedder
from docindex.infrastructure.vector.store import VectorStore

logger = logging.getLogger(__name__)


class RetrievalService:
    def __init__(self, *, store: VectorStore, embedder: Embedder, max_k: int = 50) -> None:
        self.store = store
        self.embedder = embedder
        self.max_k = max(1, max_k)

    def search(
        self,
        collection: str,
        query: str,
        k: int = 10,
        *,
        path_glob: str | None = None,
    ) -> list[SearchHit]:
        if not query or not query.strip():
            raise ValidationError("Query must not be empty.")
        if k <= 0:
            raise ValidationError(f"k must be positive, got {k}")
        if k > self.max_k:
            logger.debug("Clamping k=%d to %d", k, self.max_k)
            k = self.max_k

        # Skip the model entirely when there is nothing to rank.
        if self.store.count_chunks(collection) == 0:
            return []

        vectors = self.embedder.embed_texts([query.strip()])
        if len(vectors) != 1:
            raise EmbeddingError(f"Embedder returned {len(vectors)} vectors for one query.")
        return self.store.query(collection, vectors[0], k, path_glob=path_glob)


def format_hits_for_agent(hits: list[SearchHit], max_chars: int = 32_000) -> str:
    """Render hits as a compact text block for an agent prompt."""
    if not hits:
        return "No relevant documentation found."

    lines = [f"Found {len(hits)} relevant documentation sections:"]
    total_chars = 0
    for i, hit in enumerate(hits, 1):
        header = f"\n--- {i}. {hit.path}#{hit.ordinal} (score {hit.score:.3f}) ---"
        if total_chars + len(header) + len(hit.text_content) > max_chars:
            lines.append(f"\n... ({len(hits) - i + 1} more sections truncated)")
            break
        lines.append(header)
        lines.append(hit.text_content)
        total_chars += len(header) + len(hit.text_content)
    return "\n".join(lines)
