from __future__ import annotations

import hashlib
import threading
import time
from pathlib import Path

import pytest

from docindex.application.services.indexing_service import IndexingService
from docindex.application.services.retrieval_service import RetrievalService
from docindex.core.errors import EmbeddingError
from docindex.core.hashing import compute_bytes_digest
from docindex.infrastructure.vector.chunking import TextChunker
from docindex.infrastructure.vector.store import VectorStore


class _TrigramEmbedder:
    """Hashes character trigrams into a fixed-size bag; similar wording scores higher."""

    def __init__(self, dim: int = 256) -> None:
        self.model_name = "fake-trigram"
        self.dim = dim
        self.batches: list[int] = []
        self._lock = threading.Lock()

    def embedding_dim(self) -> int:
        return self.dim

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        with self._lock:
            self.batches.append(len(texts))
        out: list[list[float]] = []
        for text in texts:
            vec = [0.0] * self.dim
            padded = f"  {text.lower()} "
            for i in range(len(padded) - 2):
                digest = hashlib.md5(padded[i : i + 3].encode("utf-8")).digest()
                vec[int.from_bytes(digest[:4], "little") % self.dim] += 1.0
            out.append(vec)
        return out


class _PoisonEmbedder(_TrigramEmbedder):
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if any("POISON" in text for text in texts):
            raise EmbeddingError("model rejected input")
        return super().embed_texts(texts)


class _CountingStore(VectorStore):
    def __init__(self, *args, **kwargs) -> None:
        self.write_calls = 0
        super().__init__(*args, **kwargs)

    def ensure_collection(self, *args, **kwargs):
        self.write_calls += 1
        return super().ensure_collection(*args, **kwargs)

    def write_document(self, *args, **kwargs):
        self.write_calls += 1
        return super().write_document(*args, **kwargs)

    def delete_document(self, *args, **kwargs):
        self.write_calls += 1
        return super().delete_document(*args, **kwargs)


def _service(store: VectorStore, embedder=None, **kwargs) -> IndexingService:
    return IndexingService(
        store=store,
        embedder=embedder or _TrigramEmbedder(),
        chunker=kwargs.pop("chunker", TextChunker()),
        **kwargs,
    )


def _corpus(root: Path, files: dict[str, str]) -> Path:
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


def test_first_pass_indexes_everything(tmp_path: Path) -> None:
    corpus = _corpus(
        tmp_path / "docs",
        {"routing.md": "Routes live in routes/web.php.", "guide/views.md": "Views are Blade templates."},
    )
    store = VectorStore(tmp_path / "db" / "docindex.db")

    summary = _service(store).reconcile("laravel", corpus)

    assert summary.scanned == 2
    assert summary.added == 2
    assert summary.chunks_written == 2
    assert summary.failed == 0
    assert [d.path for d in store.list_documents("laravel")] == ["guide/views.md", "routing.md"]
    collection = store.get_collection("laravel")
    assert collection is not None
    assert collection.embedding_model == "fake-trigram"
    assert collection.chunking_signature == TextChunker().signature


def test_second_pass_over_unchanged_corpus_writes_nothing(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"a.md": "Alpha.", "b.md": "Beta.", "c.md": "Gamma."})
    store = _CountingStore(tmp_path / "docindex.db")
    embedder = _TrigramEmbedder()
    service = _service(store, embedder)

    service.reconcile("docs", corpus)
    store.write_calls = 0
    embedder.batches.clear()
    before = [(c.path, c.content_hash, c.updated_at) for c in store.list_documents("docs")]

    summary = service.reconcile("docs", corpus)

    assert summary.writes == 0
    assert summary.unchanged == 3
    assert store.write_calls == 0
    assert embedder.batches == []
    assert [(c.path, c.content_hash, c.updated_at) for c in store.list_documents("docs")] == before


def test_changed_file_is_reembedded_and_others_skipped(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"a.md": "Alpha text.", "b.md": "Beta text."})
    store = VectorStore(tmp_path / "docindex.db")
    embedder = _TrigramEmbedder()
    service = _service(store, embedder)
    retriever = RetrievalService(store=store, embedder=embedder)
    service.reconcile("docs", corpus)
    old_hash = {d.path: d.content_hash for d in store.list_documents("docs")}

    def b_state():
        chunks = [(c.id, c.ordinal, c.text_content) for c in store.get_document("docs", "b.md").chunks]
        hits = [(h.chunk_id, h.score) for h in retriever.search("docs", "beta", 5, path_glob="b.md")]
        return chunks, hits

    b_before = b_state()

    (corpus / "a.md").write_text("Alpha text, revised with middleware notes.", encoding="utf-8")
    summary = service.reconcile("docs", corpus)

    assert summary.updated == 1
    assert summary.unchanged == 1
    new_hash = {d.path: d.content_hash for d in store.list_documents("docs")}
    assert new_hash["a.md"] != old_hash["a.md"]
    assert new_hash["b.md"] == old_hash["b.md"]
    chunks = store.get_document("docs", "a.md").chunks
    assert [c.text_content for c in chunks] == ["Alpha text, revised with middleware notes."]
    # Untouched documents keep their chunk rows and rank identically.
    b_after = b_state()
    assert b_before[1]
    assert b_after[0] == b_before[0]
    assert [chunk_id for chunk_id, _ in b_after[1]] == [chunk_id for chunk_id, _ in b_before[1]]
    assert [score for _, score in b_after[1]] == pytest.approx([score for _, score in b_before[1]])


def test_removed_file_disappears_from_results(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"a.md": "Queues and jobs.", "b.md": "Queues and workers."})
    store = VectorStore(tmp_path / "docindex.db")
    embedder = _TrigramEmbedder()
    service = _service(store, embedder)
    service.reconcile("docs", corpus)

    (corpus / "b.md").unlink()
    summary = service.reconcile("docs", corpus)

    assert summary.deleted == 1
    assert [d.path for d in store.list_documents("docs")] == ["a.md"]
    hits = RetrievalService(store=store, embedder=embedder).search("docs", "queues workers", 10)
    assert all(h.path != "b.md" for h in hits)


def test_whitespace_only_document_is_tracked_without_chunks(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"empty.md": "   \n\n  ", "full.md": "Something useful."})
    store = VectorStore(tmp_path / "docindex.db")

    summary = _service(store).reconcile("docs", corpus)

    assert summary.added == 2
    assert store.get_document("docs", "empty.md").chunks == []
    assert store.count_chunks("docs") == 1


def test_unreadable_file_is_a_warning_not_a_deletion(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"a.md": "Readable today."})
    store = VectorStore(tmp_path / "docindex.db")
    service = _service(store)
    service.reconcile("docs", corpus)

    (corpus / "a.md").write_bytes(b"\xff\xfe broken bytes")
    summary = service.reconcile("docs", corpus)

    assert summary.deleted == 0
    assert [w.kind for w in summary.warnings] == ["io_error"]
    assert [c.text_content for c in store.get_document("docs", "a.md").chunks] == ["Readable today."]


def test_embedding_failure_only_affects_its_document(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"a.md": "Good content.", "z.md": "Stable content."})
    store = VectorStore(tmp_path / "docindex.db")
    service = _service(store, _PoisonEmbedder(), batch_size=8)
    service.reconcile("docs", corpus)
    z_before = store.get_document("docs", "z.md")

    (corpus / "a.md").write_text("Good content, now longer.", encoding="utf-8")
    (corpus / "z.md").write_text("POISON pill.", encoding="utf-8")
    summary = service.reconcile("docs", corpus)

    assert summary.updated == 1
    assert summary.failed == 1
    assert [(e.kind, e.path) for e in summary.errors] == [("embedding_error", "z.md")]
    assert [c.text_content for c in store.get_document("docs", "a.md").chunks] == ["Good content, now longer."]
    z_after = store.get_document("docs", "z.md")
    assert z_after.document.content_hash == z_before.document.content_hash
    assert [c.text_content for c in z_after.chunks] == ["Stable content."]

    # Once the file is fixed the next pass picks it up.
    (corpus / "z.md").write_text("Stable content, fixed.", encoding="utf-8")
    assert service.reconcile("docs", corpus).updated == 1


def test_batches_pack_chunks_across_documents(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {f"doc{i}.md": f"Document number {i}." for i in range(10)})
    store = VectorStore(tmp_path / "docindex.db")
    embedder = _TrigramEmbedder()

    summary = _service(store, embedder, batch_size=4, workers=3).reconcile("docs", corpus)

    assert summary.added == 10
    assert sorted(embedder.batches) == [2, 4, 4]


def test_policy_change_or_force_rebuilds(tmp_path: Path) -> None:
    corpus = _corpus(tmp_path / "docs", {"a.md": "Alpha. " * 30, "b.md": "Beta. " * 30})
    store = VectorStore(tmp_path / "docindex.db")
    _service(store).reconcile("docs", corpus)

    smaller = _service(store, chunker=TextChunker(chunk_size=50, chunk_overlap=10))
    summary = smaller.reconcile("docs", corpus)
    assert summary.rebuilt is True
    assert summary.updated == 2
    assert all(len(c.text_content) <= 50 for c in store.get_document("docs", "a.md").chunks)
    assert store.get_collection("docs").chunking_signature == smaller.chunker.signature

    assert smaller.reconcile("docs", corpus).writes == 0
    forced = smaller.reconcile("docs", corpus, force=True)
    assert forced.updated == 2
    assert forced.rebuilt is True


def test_routing_question_finds_routing_document(tmp_path: Path) -> None:
    corpus = _corpus(
        tmp_path / "docs",
        {"a.txt": "Laravel routes map URLs to controllers. Middleware filters requests."},
    )
    store = VectorStore(tmp_path / "docindex.db")
    embedder = _TrigramEmbedder()
    service = _service(store, embedder)
    retriever = RetrievalService(store=store, embedder=embedder)
    service.reconcile("laravel", corpus)

    hits = retriever.search("laravel", "How does routing work?", 1)

    assert len(hits) == 1
    assert hits[0].path == "a.txt"
    assert hits[0].score > 0

    rerun = service.reconcile("laravel", corpus)
    assert rerun.writes == 0
    assert rerun.unchanged == 1

    old_chunks = [(c.id, c.text_content) for c in store.get_document("laravel", "a.txt").chunks]
    with (corpus / "a.txt").open("a", encoding="utf-8") as fh:
        fh.write(" Queues defer slow jobs.")
    summary = service.reconcile("laravel", corpus)

    assert summary.updated == 1
    new_chunks = [(c.id, c.text_content) for c in store.get_document("laravel", "a.txt").chunks]
    assert not {chunk_id for chunk_id, _ in old_chunks} & {chunk_id for chunk_id, _ in new_chunks}
    assert "Queues defer slow jobs." in " ".join(text for _, text in new_chunks)
    assert retriever.search("laravel", "queues", 1)[0].path == "a.txt"


class _GatedEmbedder(_TrigramEmbedder):
    """Blocks inside embed_texts once ``gate`` is set, until ``release`` fires."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if self.gate:
            self.entered.set()
            self.release.wait(10)
        return super().embed_texts(texts)


class _SlowWriteStore(VectorStore):
    def write_document(self, *args, **kwargs):
        time.sleep(0.02)
        return super().write_document(*args, **kwargs)


def _release_notes(name: str, version: str) -> str:
    return "".join(f"Release {version} note {i} for {name}. " for i in range(6))


def _versions_in(texts: list[str]) -> set[str]:
    return {v for v in ("v1", "v2") if any(f"Release {v} " in text for text in texts)}


def test_readers_see_whole_documents_while_reindex_runs(tmp_path: Path) -> None:
    paths = ["a.md", "b.md", "c.md", "d.md"]
    texts = {v: {p: _release_notes(p, v) for p in paths} for v in ("v1", "v2")}
    hashes = {v: {p: compute_bytes_digest(t.encode("utf-8")) for p, t in texts[v].items()} for v in texts}
    corpus = _corpus(tmp_path / "docs", texts["v1"])
    store = _SlowWriteStore(tmp_path / "docindex.db")
    embedder = _GatedEmbedder()
    service = _service(store, embedder, chunker=TextChunker(chunk_size=60, chunk_overlap=0))
    service.reconcile("docs", corpus)
    retriever = RetrievalService(store=store, embedder=_TrigramEmbedder())
    assert all(len(store.get_document("docs", p).chunks) > 1 for p in paths)

    def observe() -> list[tuple[str, str, set[str]]]:
        seen = []
        for path in paths:
            stored = store.get_document("docs", path)
            seen.append((path, stored.document.content_hash, _versions_in([c.text_content for c in stored.chunks])))
        by_path: dict[str, list] = {}
        for hit in retriever.search("docs", "release note", 50):
            by_path.setdefault(hit.path, []).append(hit)
        assert sorted(by_path) == paths
        for path, hits in by_path.items():
            assert sorted(h.ordinal for h in hits) == list(range(len(hits)))
            seen.append((path, "", _versions_in([h.text_content for h in hits])))
        return seen

    _corpus(corpus, texts["v2"])
    embedder.gate = True
    result: dict[str, object] = {}
    writer = threading.Thread(target=lambda: result.update(summary=service.reconcile("docs", corpus)))
    writer.start()
    assert embedder.entered.wait(10)

    # Reindex is stalled mid-embedding; reads complete and see the committed state.
    for path, content_hash, versions in observe():
        assert versions == {"v1"}
        assert content_hash in ("", hashes["v1"][path])

    stop = threading.Event()
    observations: list[tuple[str, str, set[str]]] = []
    errors: list[Exception] = []

    def reader() -> None:
        while not stop.is_set():
            try:
                observations.extend(observe())
            except Exception as exc:
                errors.append(exc)
                return

    readers = [threading.Thread(target=reader) for _ in range(2)]
    for thread in readers:
        thread.start()
    embedder.release.set()
    writer.join(10)
    stop.set()
    for thread in readers:
        thread.join(10)

    assert not writer.is_alive()
    assert errors == []
    assert observations
    for path, content_hash, versions in observations:
        assert len(versions) == 1
        (version,) = versions
        assert content_hash in ("", hashes[version][path])
    assert result["summary"].updated == 4
    for path, content_hash, versions in observe():
        assert versions == {"v2"}
        assert content_hash in ("", hashes["v2"][path])
