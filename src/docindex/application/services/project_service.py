from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from docindex.core.config import AppPaths
from docindex.infrastructure.vector.store import VectorStore


@dataclass(slots=True)
class InitResult:
    paths_created: list[Path]
    db_path: Path


class ProjectService:
    def __init__(self, paths: AppPaths) -> None:
        self.paths = paths

    def init_project(self) -> InitResult:
        paths_created: list[Path] = []
        if not self.paths.data_dir.exists():
            paths_created.append(self.paths.data_dir)
        self.paths.data_dir.mkdir(parents=True, exist_ok=True)

        # Opening the store creates the schema and stamps store metadata.
        VectorStore(self.paths.db_path)
        return InitResult(paths_created=paths_created, db_path=self.paths.db_path)

    def is_initialized(self) -> bool:
        return self.paths.db_path.exists()
