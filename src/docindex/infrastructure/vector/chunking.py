from __future__ import annotations

from dataclasses import dataclass

from docindex.core.errors import ValidationError

DEFAULT_CHUNKING_VERSION = "recursive-char-v1"

# Highest priority first; a separator stays attached to the text before it.
DEFAULT_SEPARATORS: tuple[str, ...] = (
    "\n\n\n",
    "\n\n",
    "\n",
    ". ",
    "! ",
    "? ",
    ", ",
    " ",
)


@dataclass(slots=True)
class ChunkDraft:
    ordinal: int
    start_offset: int
    end_offset: int
    text_content: str
    token_count_est: int


class TextChunker:
    """Recursive character splitter that prefers paragraph and sentence boundaries.

    Text is first cut into pieces no longer than ``chunk_size`` using the
    separator hierarchy (falling back to a hard character cut), then adjacent
    pieces are merged into windows. Consecutive windows share whole trailing
    pieces up to ``chunk_overlap`` characters. Output is a pure function of the
    text and the policy.
    """

    def __init__(
        self,
        *,
        chunk_size: int = 400,
        chunk_overlap: int = 20,
        separators: tuple[str, ...] = DEFAULT_SEPARATORS,
        chunking_version: str = DEFAULT_CHUNKING_VERSION,
    ) -> None:
        if chunk_size < 1:
            raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.chunk_overlap = max(0, min(chunk_overlap, chunk_size // 2))
        self.separators = tuple(sep for sep in separators if sep)
        self.chunking_version = chunking_version

    @property
    def signature(self) -> str:
        return f"{self.chunking_version}:{self.chunk_size}:{self.chunk_overlap}"

    def split(self, text: str) -> list[ChunkDraft]:
        if not text or not text.strip():
            return []

        pieces = self._pieces(text, 0, len(text), 0)
        chunks: list[ChunkDraft] = []
        last_end = -1
        for start, end in self._merge(pieces):
            start, end = self._trim(text, start, end)
            # A window whose only new piece was whitespace adds nothing.
            if end <= start or end <= last_end:
                continue
            body = text[start:end]
            chunks.append(
                ChunkDraft(
                    ordinal=len(chunks),
                    start_offset=start,
                    end_offset=end,
                    text_content=body,
                    token_count_est=max(1, len(body) // 4),
                )
            )
            last_end = end
        return chunks

    def _pieces(self, text: str, start: int, end: int, level: int) -> list[tuple[int, int]]:
        if end - start <= self.chunk_size:
            return [(start, end)]
        if level >= len(self.separators):
            return [(pos, min(pos + self.chunk_size, end)) for pos in range(start, end, self.chunk_size)]

        separator = self.separators[level]
        bounds: list[tuple[int, int]] = []
        cursor = start
        while True:
            idx = text.find(separator, cursor, end)
            if idx == -1:
                break
            cut = idx + len(separator)
            bounds.append((cursor, cut))
            cursor = cut
        if cursor < end:
            bounds.append((cursor, end))

        if len(bounds) <= 1:
            return self._pieces(text, start, end, level + 1)

        out: list[tuple[int, int]] = []
        for s, e in bounds:
            if e - s <= self.chunk_size:
                out.append((s, e))
            else:
                out.extend(self._pieces(text, s, e, level + 1))
        return out

    def _merge(self, pieces: list[tuple[int, int]]) -> list[tuple[int, int]]:
        windows: list[tuple[int, int]] = []
        count = len(pieces)
        idx = 0
        while idx < count:
            start = pieces[idx][0]
            j = idx
            while j < count and pieces[j][1] - start <= self.chunk_size:
                j += 1
            end = pieces[j - 1][1]
            windows.append((start, end))
            if j >= count:
                break

            next_idx = j
            k = j - 1
            while (
                k > idx
                and end - pieces[k][0] <= self.chunk_overlap
                and pieces[j][1] - pieces[k][0] <= self.chunk_size
            ):
                next_idx = k
                k -= 1
            idx = next_idx
        return windows

    @staticmethod
    def _trim(text: str, start: int, end: int) -> tuple[int, int]:
        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        return start, end
