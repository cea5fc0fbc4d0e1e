from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import numpy as np
import pytest

from docindex.core.errors import EmbeddingError
from docindex.infrastructure.vector.embeddings import EmbeddingConfig, SentenceTransformerEmbedder


class _FakeModel:
    def __init__(self, *, fail: bool = False, drop_one: bool = False) -> None:
        self.fail = fail
        self.drop_one = drop_one
        self.kwargs: dict[str, object] = {}

    def encode(self, texts, **kwargs):
        self.kwargs = kwargs
        if self.fail:
            raise RuntimeError("CUDA out of memory")
        rows = [[float(len(t)), 1.0, 0.0] for t in texts]
        if self.drop_one:
            rows = rows[:-1]
        return np.asarray(rows, dtype=np.float32)


def _embedder(model: _FakeModel, **config) -> SentenceTransformerEmbedder:
    embedder = SentenceTransformerEmbedder(EmbeddingConfig(model_name="fake", **config))
    embedder._model = model
    embedder._embedding_dim = 3
    return embedder


def test_embed_texts_preserves_order_and_normalises() -> None:
    model = _FakeModel()
    vectors = _embedder(model).embed_texts(["a", "abc"])

    assert [v[0] for v in vectors] == [1.0, 3.0]
    assert model.kwargs["normalize_embeddings"] is True
    assert _embedder(model).embed_texts([]) == []


def test_model_failure_is_an_embedding_error() -> None:
    with pytest.raises(EmbeddingError, match="CUDA out of memory"):
        _embedder(_FakeModel(fail=True)).embed_texts(["a"])


def test_output_count_mismatch_is_an_embedding_error() -> None:
    with pytest.raises(EmbeddingError):
        _embedder(_FakeModel(drop_one=True)).embed_texts(["a", "b"])


def test_oversized_input_is_rejected_before_encoding() -> None:
    model = _FakeModel()
    with pytest.raises(EmbeddingError):
        _embedder(model, max_input_chars=10).embed_texts(["x" * 11])
    assert model.kwargs == {}


def test_device_resolution_prefers_explicit_then_accelerators() -> None:
    def fake_torch(mps: bool, cuda: bool):
        return SimpleNamespace(
            backends=SimpleNamespace(mps=SimpleNamespace(is_available=lambda: mps)),
            cuda=SimpleNamespace(is_available=lambda: cuda),
        )

    auto = SentenceTransformerEmbedder(EmbeddingConfig(device="auto"))
    assert auto._resolve_device(fake_torch(mps=True, cuda=True)) == "mps"
    assert auto._resolve_device(fake_torch(mps=False, cuda=True)) == "cuda"
    assert auto._resolve_device(fake_torch(mps=False, cuda=False)) == "cpu"

    pinned = SentenceTransformerEmbedder(EmbeddingConfig(device="CPU"))
    assert pinned._resolve_device(fake_torch(mps=True, cuda=True)) == "cpu"


class _OverlapTrackingModel(_FakeModel):
    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def encode(self, texts, **kwargs):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.02)
            return super().encode(texts, **kwargs)
        finally:
            with self._guard:
                self.active -= 1


def test_concurrent_callers_never_overlap_inside_encode() -> None:
    model = _OverlapTrackingModel()
    embedder = _embedder(model)

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(lambda i: embedder.embed_texts([f"text {i}"]), range(16)))

    assert len(results) == 16
    assert all(len(r) == 1 for r in results)
    assert model.max_active == 1
