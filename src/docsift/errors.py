"""Exception types raised by docsift."""


class DocsiftError(Exception):
    """Base class for all docsift errors."""


class ConfigError(DocsiftError, ValueError):
    """Missing or invalid configuration. Not retryable."""


class EmbeddingError(DocsiftError, RuntimeError):
    """The embedding provider failed or returned an unusable response."""


class DimensionMismatchError(DocsiftError, ValueError):
    """Two embeddings (or a blob and the expected width) disagree on dimensionality."""


class DocumentNotFound(DocsiftError, KeyError):
    """No document with the requested id."""

    def __init__(self, document_id: int):
        super().__init__(document_id)
        self.document_id = document_id

    def __str__(self) -> str:
        return f"Document {self.document_id} not found"


class IngestCancelled(DocsiftError):
    """Processing was stopped before the next embedding call."""


class EmptyDocumentError(DocsiftError, ValueError):
    """A document produced no text or no chunks."""
