from __future__ import annotations


class DocIndexError(Exception):
    """Base error for all user-facing docindex exceptions."""

    kind = "internal_error"

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "message": str(self)}


class ConfigurationError(DocIndexError):
    """Raised when configuration is invalid or incomplete."""

    kind = "configuration_error"


class CorpusIOError(DocIndexError):
    """Raised when a corpus file or directory cannot be read."""

    kind = "io_error"


class EmbeddingError(DocIndexError):
    """Raised when the embedding model fails for a whole batch."""

    kind = "embedding_error"


class StoreError(DocIndexError):
    """Raised when a vector store transaction fails."""

    kind = "store_error"


class SchemaMismatchError(StoreError):
    """Raised when the on-disk store was written with an incompatible format."""


class DimensionMismatchError(StoreError):
    """Raised when a vector does not match the store dimensionality."""


class ValidationError(DocIndexError):
    """Raised when tool arguments or call parameters are invalid."""

    kind = "validation_error"


class NotFoundError(DocIndexError):
    """Raised when a document or collection lookup has no match."""

    kind = "not_found"
