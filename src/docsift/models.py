"""Data models used throughout docsift."""

from dataclasses import dataclass, field
from typing import Any

from .embeddings.vector import EmbeddingVector

DUPLICATE_OF = "duplicate_of"


@dataclass
class Document:
    """A source document and the metadata search filters run against."""
    name: str
    path: str
    id: int | None = None
    content_hash: str | None = None
    file_hash: str | None = None
    tags: list[str] = field(default_factory=list)
    processed: bool = False
    processing_failed: bool = False
    word_count: int = 0
    status: str | None = None
    legal_hold: bool = False
    doc_type: str | None = None
    category: str | None = None
    client: str | None = None
    jurisdiction: str | None = None
    sensitivity: str | None = None
    language: str | None = None
    in_force: str | None = None


@dataclass(frozen=True)
class TextChunk:
    """One segment produced by the chunker."""
    content: str
    word_count: int


@dataclass
class Chunk:
    """A persisted chunk of a document."""
    document_id: int
    index: int
    content: str
    word_count: int
    embedding: EmbeddingVector | None = None


@dataclass(frozen=True)
class CandidateChunk:
    """An embedded chunk joined with its owning document's name, as read for search."""
    document_id: int
    document_name: str
    index: int
    content: str
    embedding: EmbeddingVector


@dataclass(frozen=True)
class SearchResult:
    """A chunk scored against a query."""
    document_id: int
    document_name: str
    chunk_index: int
    content: str
    score: float


@dataclass(frozen=True)
class SourceDocument:
    """A document contributing to a result set; relevance is its best chunk score."""
    document_id: int
    document_name: str
    max_score: float


@dataclass(frozen=True)
class LineageEdge:
    """Informational relation between two documents."""
    source_id: int
    target_id: int
    relation: str = DUPLICATE_OF
    confidence: float = 1.0


@dataclass(frozen=True)
class NearDuplicate:
    document_id: int
    document_name: str
    similarity: float


@dataclass
class DuplicateReport:
    """Exact duplicates of a document; each match type is reported independently."""
    content_matches: list[Document] = field(default_factory=list)
    file_matches: list[Document] = field(default_factory=list)

    @property
    def has_matches(self) -> bool:
        return bool(self.content_matches or self.file_matches)

    def as_dict(self) -> dict[str, Any]:
        return {
            "content_matches": [d.id for d in self.content_matches],
            "file_matches": [d.id for d in self.file_matches],
        }


@dataclass
class ParsedFile:
    """Text extracted from a source file."""
    content: str
    title: str
    source_type: str
    metadata: dict[str, Any] = field(default_factory=dict)
