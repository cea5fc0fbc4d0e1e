from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from docindex.core.config import DEFAULT_EXTENSIONS
from docindex.core.errors import CorpusIOError
from docindex.core.hashing import compute_bytes_digest

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CorpusFile:
    path: str
    content_hash: str
    mtime: float
    size_bytes: int
    text: str


@dataclass(slots=True)
class CorpusScan:
    root: Path
    files: list[CorpusFile] = field(default_factory=list)
    # Relative paths that exist on disk but could not be read this pass.
    unreadable: list[str] = field(default_factory=list)
    warnings: list[CorpusIOError] = field(default_factory=list)


def find_candidates(root: Path, extensions: tuple[str, ...] = DEFAULT_EXTENSIONS) -> list[Path]:
    allowed = {ext.lower() for ext in extensions}
    matched: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        for name in filenames:
            if name.startswith("."):
                continue
            candidate = Path(dirpath) / name
            if candidate.suffix.lower() in allowed:
                matched.append(candidate)
    return sorted(matched)


def read_corpus_file(root: Path, path: Path) -> CorpusFile:
    rel = path.relative_to(root).as_posix()
    try:
        stat = path.stat()
        data = path.read_bytes()
    except OSError as exc:
        raise CorpusIOError(f"Unable to read {rel}: {exc.strerror or exc}") from exc
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorpusIOError(f"{rel} is not valid UTF-8: {exc.reason}") from exc
    return CorpusFile(
        path=rel,
        content_hash=compute_bytes_digest(data),
        mtime=stat.st_mtime,
        size_bytes=stat.st_size,
        text=text,
    )


def walk_corpus(
    root: Path,
    *,
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS,
    workers: int = 4,
) -> CorpusScan:
    """Read and hash every matching file under ``root``.

    Per-file failures are collected as warnings; only a missing or unreadable
    root raises.
    """
    root = root.expanduser().resolve()
    if not root.is_dir():
        raise CorpusIOError(f"Corpus root is not a readable directory: {root}")

    candidates = find_candidates(root, extensions)
    scan = CorpusScan(root=root)
    if not candidates:
        return scan

    def _read(path: Path) -> CorpusFile | CorpusIOError:
        try:
            return read_corpus_file(root, path)
        except CorpusIOError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        results = list(executor.map(_read, candidates))

    for path, result in zip(candidates, results):
        if isinstance(result, CorpusIOError):
            logger.warning("%s", result)
            scan.unreadable.append(path.relative_to(root).as_posix())
            scan.warnings.append(result)
        else:
            scan.files.append(result)
    return scan
