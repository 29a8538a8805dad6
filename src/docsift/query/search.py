"""Two-stage semantic search: optional tag pre-filter, then vector similarity ranking."""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..embeddings.embedder import EmbeddingClient
from ..embeddings.vector import EmbeddingVector, cosine_similarity
from ..models import CandidateChunk, SearchResult, SourceDocument
from ..storage import ChunkFilter, ChunkRepository
from .tags import TagExtractor, TagsOk, score_documents_by_tags

logger = logging.getLogger(__name__)

NO_RELEVANT_INFORMATION = "No relevant information found."


@dataclass(frozen=True)
class SearchSettings:
    top_k: int = 5
    use_relevance_threshold: bool = True
    relevance_threshold: float = 0.25
    min_results: int = 3
    tag_candidates: int = 15

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "SearchSettings":
        cfg = config.get("search", {})
        return cls(
            top_k=cfg.get("top_k", 5),
            use_relevance_threshold=cfg.get("use_relevance_threshold", True),
            relevance_threshold=cfg.get("relevance_threshold", 0.25),
            min_results=cfg.get("min_results", 3),
            tag_candidates=cfg.get("tag_candidates", 15),
        )


@dataclass
class SearchResponse:
    results: list[SearchResult] = field(default_factory=list)
    sources: list[SourceDocument] = field(default_factory=list)
    tag_prefilter_used: bool = False
    query_tags: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.results


def rank_chunks(
    query_embedding: EmbeddingVector,
    candidates: Iterable[CandidateChunk],
    top_k: int | None = None,
) -> list[SearchResult]:
    """Score candidates by cosine similarity and keep the best ``top_k``.

    Equal scores keep (document id, chunk index) order so results are stable.
    """
    scored = [
        SearchResult(
            document_id=c.document_id,
            document_name=c.document_name,
            chunk_index=c.index,
            content=c.content,
            score=cosine_similarity(query_embedding, c.embedding),
        )
        for c in candidates
    ]
    scored.sort(key=lambda r: (-r.score, r.document_id, r.chunk_index))
    return scored if top_k is None else scored[:top_k]


def apply_relevance_threshold(
    results: list[SearchResult],
    threshold: float,
    min_results: int,
) -> list[SearchResult]:
    """Drop results under ``threshold`` but never return fewer than ``min_results``.

    ``results`` must be ranked best first. When too few clear the threshold the
    highest-scoring excluded results are added back, so the count is
    ``max(min_results, above_threshold)`` capped at ``len(results)``.
    """
    above = [r for r in results if r.score >= threshold]
    if len(above) >= min_results:
        return above
    return results[: max(min_results, len(above))]


def source_documents(results: Iterable[SearchResult]) -> list[SourceDocument]:
    """One entry per document with its best chunk score, most relevant first."""
    best: dict[int, SourceDocument] = {}
    for r in results:
        current = best.get(r.document_id)
        if current is None or r.score > current.max_score:
            best[r.document_id] = SourceDocument(r.document_id, r.document_name, r.score)
    return sorted(best.values(), key=lambda s: (-s.max_score, s.document_id))


def format_citations(results: list[SearchResult], chunk_counts: Mapping[int, int] | None = None) -> str:
    """Numbered context blocks for a prompt, each naming its document and position."""
    if not results:
        return NO_RELEVANT_INFORMATION

    chunk_counts = chunk_counts or {}
    blocks = []
    for i, r in enumerate(results, 1):
        total = chunk_counts.get(r.document_id)
        position = f"section {r.chunk_index + 1} of {total}" if total else f"section {r.chunk_index + 1}"
        blocks.append(
            f'[{i}] From "{r.document_name}" ({position}, relevance: {r.score * 100:.1f}%):\n{r.content}'
        )
    return "\n\n---\n\n".join(blocks)


class SearchEngine:
    """Runs Stage 1 (tag pre-filter, optional) and Stage 2 (vector ranking).

    Args:
        repository: Where candidate chunks are read from.
        embedder: Embeds the query.
        tag_extractor: Enables the tag pre-filter when given.
        settings: Ranking and threshold settings.
    """

    def __init__(
        self,
        repository: ChunkRepository,
        embedder: EmbeddingClient,
        tag_extractor: TagExtractor | None = None,
        settings: SearchSettings | None = None,
    ):
        self.repository = repository
        self.embedder = embedder
        self.tag_extractor = tag_extractor
        self.settings = settings or SearchSettings()

    def prefilter(self, query: str) -> tuple[list[int], tuple[str, ...]]:
        """Stage 1: shortlist document ids by tag overlap. Empty when skipped or unmatched."""
        if self.tag_extractor is None:
            return [], ()
        result = self.tag_extractor.extract(query)
        if not isinstance(result, TagsOk):
            return [], ()
        ids = score_documents_by_tags(result.tags, self.repository.tagged_documents(), self.settings.tag_candidates)
        if ids:
            logger.info(f"Tag pre-filter: query tags={', '.join(result.tags)} -> {len(ids)} candidate doc(s)")
        return ids, result.tags

    def _candidates(self, document_ids: list[int], filters: ChunkFilter | None) -> list[CandidateChunk]:
        if filters is not None and not filters.is_empty:
            chunks = self.repository.filtered_chunks(filters)
            if document_ids:
                allowed = set(document_ids)
                chunks = [c for c in chunks if c.document_id in allowed]
            return chunks
        if document_ids:
            return self.repository.chunks_for_documents(document_ids)
        return self.repository.all_embedded_chunks()

    def search(
        self,
        query: str,
        document_ids: list[int] | None = None,
        filters: ChunkFilter | None = None,
        top_k: int | None = None,
    ) -> SearchResponse:
        """Find the chunks most relevant to ``query``.

        Explicit ``document_ids`` skip the tag pre-filter. An empty candidate
        set yields an empty response, never an error.
        """
        if top_k is None:
            top_k = self.settings.top_k
        tags: tuple[str, ...] = ()
        prefiltered = False

        ids = list(document_ids or [])
        if not ids:
            ids, tags = self.prefilter(query)
            prefiltered = bool(ids)

        candidates = self._candidates(ids, filters)
        if not candidates and prefiltered:
            logger.info("Tag-matched documents have no embedded chunks, searching everything")
            prefiltered = False
            candidates = self._candidates([], filters)

        if not candidates:
            return SearchResponse(tag_prefilter_used=prefiltered, query_tags=tags)

        query_embedding = self.embedder.embed_query(query)
        results = rank_chunks(query_embedding, candidates, top_k)

        if self.settings.use_relevance_threshold:
            results = apply_relevance_threshold(
                results, self.settings.relevance_threshold, self.settings.min_results
            )

        return SearchResponse(
            results=results,
            sources=source_documents(results),
            tag_prefilter_used=prefiltered,
            query_tags=tags,
        )

    def search_many(self, queries: list[str], **kwargs: Any) -> list[SearchResponse]:
        """Run an independent two-stage search per query (e.g. per sub-question)."""
        return [self.search(q, **kwargs) for q in queries]

    def citations(self, response: SearchResponse) -> str:
        """Citation blocks for a response, with each document's total chunk count."""
        counts = self.repository.chunk_counts([s.document_id for s in response.sources])
        return format_citations(response.results, counts)
