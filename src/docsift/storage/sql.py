"""SQLAlchemy-backed chunk repository (SQLite by default)."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import fields as dataclass_fields
from typing import Any

from sqlalchemy import create_engine, delete, event, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..embeddings.vector import BLOB_DTYPE, EmbeddingVector
from ..errors import DimensionMismatchError, DocumentNotFound
from ..models import CandidateChunk, Chunk, Document, LineageEdge
from .base import ChunkFilter, ChunkRepository
from .tables import Base, ChunkRow, DocumentRow, LineageRow

logger = logging.getLogger(__name__)

_DOCUMENT_COLUMNS = tuple(f.name for f in dataclass_fields(Document) if f.name != "id")


def _create_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite gets foreign keys on and cross-thread access."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    in_memory = url in ("sqlite://", "sqlite:///:memory:")
    kwargs: dict[str, Any] = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if in_memory:
        # One shared connection, otherwise every session sees a fresh empty database
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


def _to_document(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        **{name: getattr(row, name) for name in _DOCUMENT_COLUMNS},
    )


class SqlChunkRepository(ChunkRepository):
    """Chunk repository on any SQLAlchemy database URL.

    Args:
        url: SQLAlchemy URL, e.g. ``sqlite:///path/docsift.db``.
        dimensions: Expected embedding width. When unset, the width of the
            first stored embedding is enforced on later writes.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str = "sqlite:///:memory:", dimensions: int | None = None, echo: bool = False):
        self.url = url
        self.dimensions = dimensions
        self.engine = _create_engine(url, echo=echo)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _get_row(session: Session, document_id: int) -> DocumentRow:
        row = session.get(DocumentRow, document_id)
        if row is None:
            raise DocumentNotFound(document_id)
        return row

    # -- documents --------------------------------------------------------

    def add_document(self, document: Document) -> Document:
        values = {name: getattr(document, name) for name in _DOCUMENT_COLUMNS}
        values["tags"] = list(values["tags"] or [])
        with self._session() as session:
            row = DocumentRow(**values)
            session.add(row)
            session.flush()
            return _to_document(row)

    def get_document(self, document_id: int) -> Document | None:
        with self._session() as session:
            row = session.get(DocumentRow, document_id)
            return _to_document(row) if row else None

    def get_document_by_path(self, path: str) -> Document | None:
        with self._session() as session:
            row = session.scalars(select(DocumentRow).where(DocumentRow.path == path)).first()
            return _to_document(row) if row else None

    def list_documents(self) -> list[Document]:
        with self._session() as session:
            rows = session.scalars(select(DocumentRow).order_by(DocumentRow.id)).all()
            return [_to_document(r) for r in rows]

    def update_document(self, document_id: int, **fields: Any) -> Document:
        unknown = sorted(set(fields) - set(_DOCUMENT_COLUMNS))
        if unknown:
            raise ValueError(f"Unknown document field(s): {', '.join(unknown)}")
        with self._session() as session:
            row = self._get_row(session, document_id)
            for name, value in fields.items():
                setattr(row, name, list(value) if name == "tags" else value)
            session.flush()
            return _to_document(row)

    def mark_processed(self, document_id: int, word_count: int) -> None:
        self.update_document(document_id, processed=True, processing_failed=False, word_count=word_count)

    def mark_failed(self, document_id: int) -> None:
        self.update_document(document_id, processed=False, processing_failed=True)

    def delete_document(self, document_id: int) -> None:
        with self._session() as session:
            row = self._get_row(session, document_id)
            session.execute(
                delete(LineageRow).where(
                    or_(LineageRow.source_id == document_id, LineageRow.target_id == document_id)
                )
            )
            session.delete(row)

    def find_by_content_hash(self, content_hash: str, exclude_id: int | None = None) -> list[Document]:
        return self._find_by(DocumentRow.content_hash, content_hash, exclude_id)

    def find_by_file_hash(self, file_hash: str, exclude_id: int | None = None) -> list[Document]:
        return self._find_by(DocumentRow.file_hash, file_hash, exclude_id)

    def _find_by(self, column, value: str, exclude_id: int | None) -> list[Document]:
        if not value:
            return []
        stmt = select(DocumentRow).where(column == value)
        if exclude_id is not None:
            stmt = stmt.where(DocumentRow.id != exclude_id)
        with self._session() as session:
            return [_to_document(r) for r in session.scalars(stmt.order_by(DocumentRow.id)).all()]

    def tagged_documents(self) -> list[Document]:
        # JSON emptiness checks differ per dialect; filter in Python
        return [d for d in self.list_documents() if d.tags]

    def processed_document_ids(self, exclude_id: int | None = None) -> list[int]:
        stmt = (
            select(DocumentRow.id)
            .join(ChunkRow, ChunkRow.document_id == DocumentRow.id)
            .where(DocumentRow.processed.is_(True), ChunkRow.embedding.is_not(None))
            .distinct()
            .order_by(DocumentRow.id)
        )
        if exclude_id is not None:
            stmt = stmt.where(DocumentRow.id != exclude_id)
        with self._session() as session:
            return list(session.scalars(stmt).all())

    # -- chunks -----------------------------------------------------------

    def replace_chunks(self, document_id: int, chunks: list[Chunk]) -> None:
        widths = set()
        seen_indexes = set()
        for chunk in chunks:
            if chunk.document_id != document_id:
                raise ValueError(f"Chunk {chunk.index} belongs to document {chunk.document_id}, not {document_id}")
            if chunk.embedding is None:
                raise ValueError(f"Chunk {chunk.index} of document {document_id} has no embedding")
            if chunk.index in seen_indexes:
                raise ValueError(f"Duplicate chunk index {chunk.index} for document {document_id}")
            seen_indexes.add(chunk.index)
            widths.add(chunk.embedding.dimensions)
        if len(widths) > 1:
            raise DimensionMismatchError(f"Chunks of document {document_id} mix dimensionalities {sorted(widths)}")

        with self._session() as session:
            self._get_row(session, document_id)
            expected = self._expected_dimensions(session, document_id)
            if widths and expected is not None and widths != {expected}:
                raise DimensionMismatchError(
                    f"Document {document_id} embeddings are {widths.pop()}-dimensional, store expects {expected}"
                )

            session.execute(delete(ChunkRow).where(ChunkRow.document_id == document_id))
            session.add_all(
                ChunkRow(
                    document_id=document_id,
                    chunk_index=chunk.index,
                    content=chunk.content,
                    word_count=chunk.word_count,
                    embedding=chunk.embedding.to_blob(),
                )
                for chunk in chunks
            )
        logger.debug(f"Stored {len(chunks)} chunk(s) for document {document_id}")

    def _expected_dimensions(self, session: Session, document_id: int) -> int | None:
        if self.dimensions:
            return self.dimensions
        width = session.scalar(
            select(func.length(ChunkRow.embedding))
            .where(ChunkRow.document_id != document_id, ChunkRow.embedding.is_not(None))
            .limit(1)
        )
        return width // BLOB_DTYPE.itemsize if width else None

    def chunks_for_document(self, document_id: int) -> list[Chunk]:
        stmt = select(ChunkRow).where(ChunkRow.document_id == document_id).order_by(ChunkRow.chunk_index)
        with self._session() as session:
            return [
                Chunk(
                    document_id=row.document_id,
                    index=row.chunk_index,
                    content=row.content,
                    word_count=row.word_count,
                    embedding=self._decode(row.embedding) if row.embedding is not None else None,
                )
                for row in session.scalars(stmt).all()
            ]

    def _candidate_query(self):
        return (
            select(ChunkRow, DocumentRow.name)
            .join(DocumentRow, ChunkRow.document_id == DocumentRow.id)
            .where(ChunkRow.embedding.is_not(None))
            .order_by(ChunkRow.document_id, ChunkRow.chunk_index)
        )

    def _candidates(self, stmt) -> list[CandidateChunk]:
        with self._session() as session:
            return [
                CandidateChunk(
                    document_id=row.document_id,
                    document_name=name,
                    index=row.chunk_index,
                    content=row.content,
                    embedding=self._decode(row.embedding),
                )
                for row, name in session.execute(stmt).all()
            ]

    def _decode(self, blob: bytes) -> EmbeddingVector:
        return EmbeddingVector.from_blob(blob, self.dimensions)

    def chunks_for_documents(self, document_ids: list[int]) -> list[CandidateChunk]:
        if not document_ids:
            return []
        return self._candidates(self._candidate_query().where(ChunkRow.document_id.in_(list(document_ids))))

    def all_embedded_chunks(self) -> list[CandidateChunk]:
        return self._candidates(self._candidate_query())

    def filtered_chunks(self, chunk_filter: ChunkFilter) -> list[CandidateChunk]:
        stmt = self._candidate_query()
        if chunk_filter.allowed_statuses:
            stmt = stmt.where(DocumentRow.status.in_(chunk_filter.allowed_statuses))
        if chunk_filter.excluded_statuses:
            stmt = stmt.where(
                or_(DocumentRow.status.is_(None), DocumentRow.status.not_in(chunk_filter.excluded_statuses))
            )
        if chunk_filter.legal_hold is not None:
            stmt = stmt.where(DocumentRow.legal_hold.is_(chunk_filter.legal_hold))
        for name, value in chunk_filter.metadata.items():
            stmt = stmt.where(getattr(DocumentRow, name) == value)
        return self._candidates(stmt)

    def embeddings_for_document(self, document_id: int) -> list[EmbeddingVector]:
        stmt = (
            select(ChunkRow.embedding)
            .where(ChunkRow.document_id == document_id, ChunkRow.embedding.is_not(None))
            .order_by(ChunkRow.chunk_index)
        )
        with self._session() as session:
            return [self._decode(blob) for blob in session.scalars(stmt).all()]

    def chunk_signature(self, document_id: int) -> tuple[int, int]:
        stmt = select(func.count(ChunkRow.id), func.max(ChunkRow.id)).where(
            ChunkRow.document_id == document_id, ChunkRow.embedding.is_not(None)
        )
        with self._session() as session:
            count, max_id = session.execute(stmt).one()
            return int(count or 0), int(max_id or 0)

    def chunk_counts(self, document_ids: list[int]) -> dict[int, int]:
        counts = {doc_id: 0 for doc_id in document_ids}
        if not document_ids:
            return counts
        stmt = (
            select(ChunkRow.document_id, func.count(ChunkRow.id))
            .where(ChunkRow.document_id.in_(list(document_ids)))
            .group_by(ChunkRow.document_id)
        )
        with self._session() as session:
            for doc_id, count in session.execute(stmt).all():
                counts[doc_id] = count
        return counts

    def count_chunks(self) -> int:
        with self._session() as session:
            return session.scalar(select(func.count(ChunkRow.id)).where(ChunkRow.embedding.is_not(None))) or 0

    # -- lineage ----------------------------------------------------------

    def add_lineage(self, edge: LineageEdge) -> None:
        with self._session() as session:
            session.add(
                LineageRow(
                    source_id=edge.source_id,
                    target_id=edge.target_id,
                    relation=edge.relation,
                    confidence=edge.confidence,
                )
            )

    def lineage_for(self, document_id: int) -> list[LineageEdge]:
        stmt = select(LineageRow).where(LineageRow.source_id == document_id).order_by(LineageRow.id)
        with self._session() as session:
            return [
                LineageEdge(source_id=r.source_id, target_id=r.target_id, relation=r.relation, confidence=r.confidence)
                for r in session.scalars(stmt).all()
            ]
