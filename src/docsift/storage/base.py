"""Abstract chunk repository and factory function."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..embeddings.vector import EmbeddingVector
from ..models import CandidateChunk, Chunk, Document, LineageEdge

# Document-level fields that may be used as equality filters on search
FILTERABLE_FIELDS = (
    "doc_type",
    "category",
    "client",
    "jurisdiction",
    "sensitivity",
    "language",
    "in_force",
)


@dataclass
class ChunkFilter:
    """Conjunction of document-level predicates for filtered chunk reads.

    ``None`` or empty values mean "no constraint".
    """
    allowed_statuses: list[str] | None = None
    excluded_statuses: list[str] | None = None
    legal_hold: bool | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        unknown = sorted(set(self.metadata) - set(FILTERABLE_FIELDS))
        if unknown:
            raise ValueError(f"Unsupported filter field(s): {', '.join(unknown)}")

    @property
    def is_empty(self) -> bool:
        return not (self.allowed_statuses or self.excluded_statuses or self.legal_hold is not None or self.metadata)


class ChunkRepository(ABC):
    """Persistence for documents, their chunks and lineage edges."""

    # -- documents --------------------------------------------------------

    @abstractmethod
    def add_document(self, document: Document) -> Document:
        """Insert a document and return it with its id assigned."""

    @abstractmethod
    def get_document(self, document_id: int) -> Document | None:
        """Fetch a document by id."""

    @abstractmethod
    def get_document_by_path(self, path: str) -> Document | None:
        """Fetch a document by its source path."""

    @abstractmethod
    def list_documents(self) -> list[Document]:
        """All documents ordered by id."""

    @abstractmethod
    def update_document(self, document_id: int, **fields: Any) -> Document:
        """Update document metadata columns."""

    @abstractmethod
    def mark_processed(self, document_id: int, word_count: int) -> None:
        """Flag a document as fully chunked and embedded."""

    @abstractmethod
    def mark_failed(self, document_id: int) -> None:
        """Flag a document whose processing aborted; it is not processed."""

    @abstractmethod
    def delete_document(self, document_id: int) -> None:
        """Delete a document with its chunks and lineage."""

    @abstractmethod
    def find_by_content_hash(self, content_hash: str, exclude_id: int | None = None) -> list[Document]:
        """Documents sharing a normalized-text hash."""

    @abstractmethod
    def find_by_file_hash(self, file_hash: str, exclude_id: int | None = None) -> list[Document]:
        """Documents sharing a raw-bytes hash."""

    @abstractmethod
    def tagged_documents(self) -> list[Document]:
        """Documents with at least one tag."""

    @abstractmethod
    def processed_document_ids(self, exclude_id: int | None = None) -> list[int]:
        """Ids of processed documents that have embedded chunks."""

    # -- chunks -----------------------------------------------------------

    @abstractmethod
    def replace_chunks(self, document_id: int, chunks: list[Chunk]) -> None:
        """Swap a document's chunk set in one transaction (delete then insert)."""

    @abstractmethod
    def chunks_for_document(self, document_id: int) -> list[Chunk]:
        """Every chunk of one document, ordered by index."""

    @abstractmethod
    def chunks_for_documents(self, document_ids: list[int]) -> list[CandidateChunk]:
        """Read mode (a): embedded chunks of an explicit set of documents."""

    @abstractmethod
    def all_embedded_chunks(self) -> list[CandidateChunk]:
        """Read mode (b): every embedded chunk."""

    @abstractmethod
    def filtered_chunks(self, chunk_filter: ChunkFilter) -> list[CandidateChunk]:
        """Read mode (c): embedded chunks whose document matches the filter."""

    @abstractmethod
    def embeddings_for_document(self, document_id: int) -> list[EmbeddingVector]:
        """Embeddings of one document's chunks, ordered by index."""

    @abstractmethod
    def chunk_signature(self, document_id: int) -> tuple[int, int]:
        """Cheap fingerprint of a chunk set: (embedded chunk count, highest chunk row id)."""

    @abstractmethod
    def chunk_counts(self, document_ids: list[int]) -> dict[int, int]:
        """Total chunk count per document."""

    @abstractmethod
    def count_chunks(self) -> int:
        """Number of embedded chunks in the store."""

    # -- lineage ----------------------------------------------------------

    @abstractmethod
    def add_lineage(self, edge: LineageEdge) -> None:
        """Record a lineage edge."""

    @abstractmethod
    def lineage_for(self, document_id: int) -> list[LineageEdge]:
        """Edges whose source is the given document."""


def get_chunk_repository(config: dict[str, Any]) -> ChunkRepository:
    """Factory: return the repository for the configured database."""
    from .sql import SqlChunkRepository

    return SqlChunkRepository(
        config.get("database_url", "sqlite:///:memory:"),
        dimensions=config.get("embedding", {}).get("dimensions"),
    )
