from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console

from docindex.core.config import AppPaths, IndexSettings


@dataclass(slots=True)
class CLIContext:
    paths: AppPaths
    settings: IndexSettings
    console: Console
