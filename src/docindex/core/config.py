from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    data_dir: Path
    db_path: Path


DEFAULT_DATA_DIRNAME = ".docindex"
DEFAULT_DB_FILENAME = "docindex.db"
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_EXTENSIONS = (".md", ".markdown", ".txt", ".rst")


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("DOCINDEX_HOME")
    if home_raw:
        data_dir = Path(home_raw).expanduser().resolve()
    else:
        data_dir = root / DEFAULT_DATA_DIRNAME

    return AppPaths(
        project_root=root,
        data_dir=data_dir,
        db_path=data_dir / DEFAULT_DB_FILENAME,
    )


@dataclass(frozen=True)
class IndexSettings:
    chunk_size: int = 400
    chunk_overlap: int = 20
    batch_size: int = 64
    workers: int = 4
    max_k: int = 50
    default_k: int = 10
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    device: str = "auto"
    extensions: tuple[str, ...] = field(default=DEFAULT_EXTENSIONS)


def load_settings() -> IndexSettings:
    defaults = IndexSettings()
    return IndexSettings(
        chunk_size=read_int_env("DOCINDEX_CHUNK_SIZE", defaults.chunk_size),
        chunk_overlap=read_int_env("DOCINDEX_CHUNK_OVERLAP", defaults.chunk_overlap, allow_zero=True),
        batch_size=read_int_env("DOCINDEX_BATCH_SIZE", defaults.batch_size),
        workers=read_int_env("DOCINDEX_WORKERS", defaults.workers),
        max_k=read_int_env("DOCINDEX_MAX_K", defaults.max_k),
        default_k=read_int_env("DOCINDEX_DEFAULT_K", defaults.default_k),
        embedding_model=os.getenv("DOCINDEX_EMBEDDING_MODEL", "").strip() or defaults.embedding_model,
        device=os.getenv("DOCINDEX_DEVICE", "").strip() or defaults.device,
        extensions=_read_extensions_env("DOCINDEX_EXTENSIONS", defaults.extensions),
    )


def read_int_env(name: str, default: int, *, allow_zero: bool = False) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def read_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_extensions_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw or not raw.strip():
        return default
    out: list[str] = []
    for item in raw.split(","):
        ext = item.strip().lower()
        if not ext:
            continue
        out.append(ext if ext.startswith(".") else f".{ext}")
    return tuple(out) or default
