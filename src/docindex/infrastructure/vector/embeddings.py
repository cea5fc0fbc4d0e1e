from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Protocol

from docindex.core.config import DEFAULT_EMBEDDING_MODEL
from docindex.core.errors import EmbeddingError

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns a batch of texts into fixed-length vectors."""

    @property
    def model_name(self) -> str: ...

    def embedding_dim(self) -> int: ...

    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_EMBEDDING_MODEL
    device: str = "auto"
    batch_size: int = 64
    max_input_chars: int = 8192


class SentenceTransformerEmbedder:
    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._model = None
        self._embedding_dim: int | None = None
        self._load_lock = threading.Lock()
        # encode() must not run on two threads at once.
        self._encode_lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def embedding_dim(self) -> int:
        if self._embedding_dim is None:
            self._load_model()
            if self._embedding_dim is None:
                raise EmbeddingError("Unable to determine embedding dimension.")
        return self._embedding_dim

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        limit = self.config.max_input_chars
        for idx, text in enumerate(texts):
            if len(text) > limit:
                raise EmbeddingError(
                    f"Input {idx} has {len(text)} characters, model input limit is {limit}."
                )

        self._load_model()
        try:
            with self._encode_lock:
                vectors = self._model.encode(
                    texts,
                    batch_size=max(1, self.config.batch_size),
                    normalize_embeddings=True,
                    convert_to_numpy=True,
                    show_progress_bar=False,
                )
        except Exception as exc:
            raise EmbeddingError(f"Embedding model failed on a batch of {len(texts)}: {exc}") from exc

        if hasattr(vectors, "tolist"):
            out = vectors.tolist()
        else:
            out = [list(v) for v in vectors]
        if len(out) != len(texts):
            raise EmbeddingError(f"Embedding model returned {len(out)} vectors for {len(texts)} inputs.")
        if out and self._embedding_dim is None:
            self._embedding_dim = len(out[0])
        if any(len(row) != self._embedding_dim for row in out):
            raise EmbeddingError("Embedding model returned vectors of inconsistent dimension.")
        return [[float(x) for x in row] for row in out]

    def _load_model(self) -> None:
        if self._model is not None:
            return
        with self._load_lock:
            if self._model is not None:
                return
            try:
                import torch
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:  # pragma: no cover - dependency guard
                raise EmbeddingError(
                    "Embedding dependencies are missing. Install with `pip install -e .`."
                ) from exc

            # Keep CPU thread counts bounded when running on large machines.
            if "OMP_NUM_THREADS" not in os.environ:
                os.environ["OMP_NUM_THREADS"] = "8"

            device = self._resolve_device(torch)
            logger.info("Loading embedding model %s on %s", self.config.model_name, device)
            try:
                model = SentenceTransformer(self.config.model_name, device=device)
            except Exception as exc:
                raise EmbeddingError(
                    f"Embedding model {self.config.model_name} is unavailable: {exc}"
                ) from exc
            dim = model.get_sentence_embedding_dimension()
            self._embedding_dim = int(dim) if dim else None
            self._model = model

    def _resolve_device(self, torch_module) -> str:
        configured = (self.config.device or "auto").strip().lower()
        if configured and configured != "auto":
            return configured

        if bool(getattr(torch_module.backends, "mps", None)) and torch_module.backends.mps.is_available():
            return "mps"
        if torch_module.cuda.is_available():
            return "cuda"
        return "cpu"
