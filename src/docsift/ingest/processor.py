"""Document processor - the heart of ingestion.

Text goes in, chunks with embeddings come out and replace whatever the document
had before, then the document is checked for duplicates.
"""

import hashlib
import logging
import re
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..dedup.detector import DEFAULT_NEAR_DUPLICATE_THRESHOLD, DuplicateDetector
from ..embeddings.embedder import EmbeddingClient
from ..embeddings.vector import EmbeddingVector
from ..errors import DocumentNotFound, EmptyDocumentError, IngestCancelled
from ..models import Chunk, Document, DuplicateReport, LineageEdge, NearDuplicate, TextChunk
from ..storage import FILTERABLE_FIELDS, ChunkRepository
from .chunker import chunk_text
from .parsers import parse_file
from .tagger import DocumentTagger, apply_document_metadata

logger = logging.getLogger(__name__)


def compute_content_hash(text: str) -> str:
    """SHA256 of normalized text, so reformatted copies hash the same."""
    normalized = re.sub(r"\s+", " ", text).strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def compute_file_hash(data: bytes) -> str:
    """SHA256 of the raw file bytes."""
    return hashlib.sha256(data).hexdigest()


class DocumentLocks:
    """One lock per document id; processing of a single document is serialised."""

    def __init__(self):
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, document_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = self._locks[document_id] = threading.Lock()
            return lock

    def discard(self, document_id: int) -> None:
        with self._guard:
            self._locks.pop(document_id, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class ProcessingResult:
    document: Document
    chunk_count: int
    duplicates: DuplicateReport = field(default_factory=DuplicateReport)
    near_duplicates: list[NearDuplicate] = field(default_factory=list)
    lineage: list[LineageEdge] = field(default_factory=list)


class DocumentProcessor:
    """Chunks, embeds and stores documents.

    Args:
        repository: Chunk repository the results are written to.
        embedder: Embedding client for chunk text.
        chunking: ``target_words``/``overlap_words``/``min_words`` overrides.
        workers: Maximum concurrent embedding calls per document.
        detector: Duplicate detector; built from the repository when omitted.
        locks: Shared lock registry, for processors sharing one repository.
    """

    def __init__(
        self,
        repository: ChunkRepository,
        embedder: EmbeddingClient,
        chunking: dict[str, int] | None = None,
        workers: int = 4,
        detector: DuplicateDetector | None = None,
        near_duplicate_threshold: float = DEFAULT_NEAR_DUPLICATE_THRESHOLD,
        locks: DocumentLocks | None = None,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.repository = repository
        self.embedder = embedder
        self.chunking = dict(chunking or {})
        self.workers = workers
        self.detector = detector or DuplicateDetector(repository, near_duplicate_threshold)
        self.locks = locks or DocumentLocks()

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        repository: ChunkRepository,
        embedder: EmbeddingClient,
    ) -> "DocumentProcessor":
        return cls(
            repository,
            embedder,
            chunking=config.get("chunking"),
            workers=config.get("embedding", {}).get("workers", 4),
            near_duplicate_threshold=config.get("dedup", {}).get(
                "near_duplicate_threshold", DEFAULT_NEAR_DUPLICATE_THRESHOLD
            ),
        )

    def process(
        self,
        document_id: int,
        text: str,
        raw_bytes: bytes | None = None,
        cancel: threading.Event | None = None,
    ) -> ProcessingResult:
        """Replace a document's chunks with freshly embedded ones.

        On any failure the previously stored chunks are left as they were and
        the document is marked failed before the error is re-raised.
        """
        if self.repository.get_document(document_id) is None:
            raise DocumentNotFound(document_id)

        with self.locks.get(document_id):
            try:
                pieces = chunk_text(text, **self.chunking)
                if not pieces:
                    raise EmptyDocumentError(f"Document {document_id} has no text to chunk")

                embeddings = self._embed_ordered(pieces, cancel)
                chunks = [
                    Chunk(document_id, i, piece.content, piece.word_count, vec)
                    for i, (piece, vec) in enumerate(zip(pieces, embeddings))
                ]
                self.repository.replace_chunks(document_id, chunks)

                # Hashes describe the stored chunks, so they only move on success
                hashes = {"content_hash": compute_content_hash(text)}
                if raw_bytes is not None:
                    hashes["file_hash"] = compute_file_hash(raw_bytes)
                self.repository.update_document(document_id, **hashes)
                self.repository.mark_processed(document_id, sum(p.word_count for p in pieces))
            except Exception as e:
                logger.error(f"Processing document {document_id} failed: {e}")
                self.repository.mark_failed(document_id)
                raise

            logger.info(f"Document {document_id}: {len(chunks)} chunk(s) embedded")

            report = self.detector.find_duplicates(document_id)
            near = self.detector.find_near_duplicates(document_id)
            lineage = self.detector.record_lineage(document_id, report, near)

        return ProcessingResult(
            document=self.repository.get_document(document_id),
            chunk_count=len(chunks),
            duplicates=report,
            near_duplicates=near,
            lineage=lineage,
        )

    def delete_document(self, document_id: int) -> None:
        """Delete a document and drop the per-document state held for it."""
        try:
            with self.locks.get(document_id):
                self.repository.delete_document(document_id)
                self.detector.forget(document_id)
        finally:
            self.locks.discard(document_id)
        logger.info(f"Deleted document {document_id}")

    def _embed_ordered(self, pieces: list[TextChunk], cancel: threading.Event | None) -> list[EmbeddingVector]:
        """Embed chunks on a bounded pool; results come back in chunk order."""

        def embed_one(text: str) -> EmbeddingVector:
            if cancel is not None and cancel.is_set():
                raise IngestCancelled("Processing cancelled")
            return self.embedder.embed(text)

        with ThreadPoolExecutor(max_workers=min(self.workers, len(pieces))) as pool:
            futures = [pool.submit(embed_one, p.content) for p in pieces]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            # Surface the first failure in chunk order
            for future in futures:
                if future in done and future.exception() is not None:
                    raise future.exception()
            return [f.result() for f in futures]


def ingest_file(
    path: Path,
    processor: DocumentProcessor,
    cancel: threading.Event | None = None,
    tagger: DocumentTagger | None = None,
) -> ProcessingResult | None:
    """Parse a file, register it (or find it by path) and process it.

    Frontmatter ``tags`` and filterable fields are copied onto the document
    and win over anything the tagger suggests. Returns None when the file
    type is unsupported.
    """
    parsed = parse_file(path)
    if parsed is None:
        return None
    if not parsed.content.strip():
        raise EmptyDocumentError(f"No text extracted from {path}")

    repository = processor.repository
    tags = [str(t) for t in parsed.metadata.get("tags") or []]
    fields = {
        key: str(parsed.metadata[key])
        for key in FILTERABLE_FIELDS
        if parsed.metadata.get(key) is not None
    }
    doc = repository.get_document_by_path(str(path))
    if doc is None:
        doc = repository.add_document(Document(name=parsed.title, path=str(path), tags=tags, **fields))
        logger.info(f"Registered {path.name} as document {doc.id}")
    else:
        changed = {k: v for k, v in fields.items() if getattr(doc, k) != v}
        if tags != doc.tags:
            changed["tags"] = tags
        if changed:
            repository.update_document(doc.id, **changed)

    result = processor.process(doc.id, parsed.content, raw_bytes=path.read_bytes(), cancel=cancel)

    if tagger is not None:
        metadata = tagger.extract(parsed.content)
        apply_document_metadata(repository, doc.id, metadata, base_tags=tags, preserve=frozenset(fields))
        result.document = repository.get_document(doc.id)
    return result


def ingest_directory(
    directory: Path,
    processor: DocumentProcessor,
    cancel: threading.Event | None = None,
    on_error: Callable[[Path, Exception], None] | None = None,
    tagger: DocumentTagger | None = None,
) -> list[ProcessingResult]:
    """Ingest every supported file under a directory, skipping dotfiles."""
    results = []
    for file_path in sorted(directory.rglob("*")):
        if not file_path.is_file() or file_path.name.startswith("."):
            continue
        if cancel is not None and cancel.is_set():
            raise IngestCancelled("Ingestion cancelled")
        try:
            result = ingest_file(file_path, processor, cancel=cancel, tagger=tagger)
        except IngestCancelled:
            raise
        except Exception as e:
            if on_error is None:
                raise
            on_error(file_path, e)
            continue
        if result is not None:
            results.append(result)
    return results
