"""Exact and near-duplicate document detection."""

import logging
import threading

from ..embeddings.vector import EmbeddingVector, cosine_similarity, mean_embedding
from ..errors import DocumentNotFound
from ..models import DUPLICATE_OF, DuplicateReport, LineageEdge, NearDuplicate
from ..storage import ChunkRepository

logger = logging.getLogger(__name__)

DEFAULT_NEAR_DUPLICATE_THRESHOLD = 0.92


class DuplicateDetector:
    """Finds duplicates of a document among the others in a repository.

    Near-duplicates compare the mean of each document's chunk embeddings, one
    vector per document. Partial overlap gets diluted by the average, which is
    the price of O(documents) instead of O(chunks²) comparisons.

    Per-document means are cached and keyed on the document's chunk signature,
    so a reprocessed document is recomputed on the next call.
    """

    def __init__(self, repository: ChunkRepository, threshold: float = DEFAULT_NEAR_DUPLICATE_THRESHOLD):
        self.repository = repository
        self.threshold = threshold
        self._means: dict[int, tuple[tuple[int, int], EmbeddingVector | None]] = {}
        self._lock = threading.Lock()

    def find_duplicates(self, document_id: int) -> DuplicateReport:
        """Other documents with the same content hash or the same file hash."""
        doc = self.repository.get_document(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        return DuplicateReport(
            content_matches=self.repository.find_by_content_hash(doc.content_hash, exclude_id=document_id)
            if doc.content_hash else [],
            file_matches=self.repository.find_by_file_hash(doc.file_hash, exclude_id=document_id)
            if doc.file_hash else [],
        )

    def document_mean(self, document_id: int) -> EmbeddingVector | None:
        """Mean chunk embedding of a document; None when it has no embedded chunks."""
        signature = self.repository.chunk_signature(document_id)
        with self._lock:
            cached = self._means.get(document_id)
        if cached is not None and cached[0] == signature:
            return cached[1]

        mean = mean_embedding(self.repository.embeddings_for_document(document_id)) if signature[0] else None
        with self._lock:
            self._means[document_id] = (signature, mean)
        return mean

    def forget(self, document_id: int) -> None:
        """Drop a document's cached mean, e.g. after it was deleted."""
        with self._lock:
            self._means.pop(document_id, None)

    def _evict_missing(self, live_ids: set[int]) -> None:
        with self._lock:
            for stale in [i for i in self._means if i not in live_ids]:
                del self._means[stale]

    def find_near_duplicates(self, document_id: int, threshold: float | None = None) -> list[NearDuplicate]:
        """Processed documents whose mean embedding is at least ``threshold`` similar."""
        threshold = self.threshold if threshold is None else threshold
        target = self.document_mean(document_id)
        if target is None:
            return []

        others = self.repository.processed_document_ids(exclude_id=document_id)
        self._evict_missing({document_id, *others})

        matches = []
        for other_id in others:
            other = self.document_mean(other_id)
            if other is None:
                continue
            similarity = cosine_similarity(target, other)
            if similarity >= threshold:
                doc = self.repository.get_document(other_id)
                matches.append(NearDuplicate(other_id, doc.name if doc else "", round(similarity, 3)))

        matches.sort(key=lambda m: (-m.similarity, m.document_id))
        return matches

    def record_lineage(
        self,
        document_id: int,
        report: DuplicateReport,
        near_duplicates: list[NearDuplicate],
    ) -> list[LineageEdge]:
        """Store ``duplicate_of`` edges for content matches and near duplicates."""
        edges = [LineageEdge(document_id, d.id, DUPLICATE_OF, 1.0) for d in report.content_matches]
        exact_ids = {d.id for d in report.content_matches}
        edges += [
            LineageEdge(document_id, n.document_id, DUPLICATE_OF, n.similarity)
            for n in near_duplicates
            if n.document_id not in exact_ids
        ]
        for edge in edges:
            self.repository.add_lineage(edge)
        if edges:
            logger.info(f"Document {document_id}: recorded {len(edges)} duplicate_of edge(s)")
        return edges
