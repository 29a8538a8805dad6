"""Stage 1 of retrieval: query tag extraction and tag-overlap document scoring."""

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union

import anthropic

from ..models import Document
from .prompts import QUERY_TAGS_PROMPT

logger = logging.getLogger(__name__)

MAX_QUERY_TAGS = 15
EXACT_MATCH_SCORE = 2
PARTIAL_MATCH_SCORE = 1


@dataclass(frozen=True)
class TagsOk:
    tags: tuple[str, ...]


@dataclass(frozen=True)
class TagsFallback:
    """No usable tags; callers run an unfiltered search."""
    reason: str


TagParseResult = Union[TagsOk, TagsFallback]


@dataclass(frozen=True)
class TagScore:
    document_id: int
    score: int


def normalize_tag(tag: str) -> str:
    """Lowercase, hyphenate whitespace/underscores, drop punctuation."""
    tag = str(tag).strip().lower()
    tag = re.sub(r"[\s_]+", "-", tag)
    tag = re.sub(r"[^\w-]", "", tag)
    tag = re.sub(r"-{2,}", "-", tag)
    return tag.strip("-")


def _load_json_array(text: str) -> Any:
    """Extract a JSON array from model output, tolerating code fences and chatter."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # ```json ... ``` or ``` ... ```
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    # First [ ... ] block
    match = re.search(r"\[.*?\]", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    return None


def parse_tag_response(text: str, max_tags: int = MAX_QUERY_TAGS) -> TagParseResult:
    """Turn a tag-service response into normalized tags, or a fallback marker."""
    if not text or not text.strip():
        return TagsFallback("empty response")

    parsed = _load_json_array(text)
    if not isinstance(parsed, list):
        return TagsFallback("response did not contain a JSON array")

    tags: list[str] = []
    for item in parsed:
        if not isinstance(item, str):
            continue
        tag = normalize_tag(item)
        if tag and tag not in tags:
            tags.append(tag)

    if not tags:
        return TagsFallback("no tags in response")
    return TagsOk(tuple(tags[:max_tags]))


class TagExtractor:
    """Derives topical tags for a query with one Claude call."""

    def __init__(self, client: Any, model: str = "claude-3-haiku-20240307", max_tokens: int = 256):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "TagExtractor | None":
        """Build an extractor, or None when tagging is disabled or no API key is set."""
        tag_cfg = config.get("tagging", {})
        if not tag_cfg.get("enabled", True):
            return None
        api_key = config.get("claude_api_key")
        if not api_key:
            logger.info("No Claude API key configured; tag pre-filtering disabled")
            return None
        client = anthropic.Anthropic(api_key=api_key, timeout=tag_cfg.get("timeout", 20))
        return cls(
            client,
            model=tag_cfg.get("model", "claude-3-haiku-20240307"),
            max_tokens=tag_cfg.get("max_tokens", 256),
        )

    def extract(self, query: str) -> TagParseResult:
        """Tags for the query. Never raises on provider or parse failure."""
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=QUERY_TAGS_PROMPT,
                messages=[{"role": "user", "content": query}],
            )
        except anthropic.APIError as e:
            logger.warning(f"Query tag extraction failed, using unfiltered search: {e}")
            return TagsFallback(str(e))

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        result = parse_tag_response(text)
        if isinstance(result, TagsFallback):
            logger.warning(f"Could not parse query tags ({result.reason}), using unfiltered search")
        return result


def _pair_score(query_tag: str, doc_tag: str) -> int:
    if query_tag == doc_tag:
        return EXACT_MATCH_SCORE
    if query_tag in doc_tag or doc_tag in query_tag:
        return PARTIAL_MATCH_SCORE
    return 0


def rank_documents_by_tags(query_tags: Iterable[str], documents: Iterable[Document]) -> list[TagScore]:
    """Score every document by tag overlap; only positive scores are returned.

    Exact tag match scores 2, substring containment either way scores 1, summed
    over all (query tag, document tag) pairs. Ties go to the lower document id.
    """
    q_tags = [t for t in (normalize_tag(t) for t in query_tags) if t]
    if not q_tags:
        return []

    scores = []
    for doc in documents:
        d_tags = [t for t in (normalize_tag(t) for t in doc.tags or []) if t]
        score = sum(_pair_score(q, d) for q in q_tags for d in d_tags)
        if score > 0:
            scores.append(TagScore(document_id=doc.id, score=score))

    scores.sort(key=lambda s: (-s.score, s.document_id))
    return scores


def score_documents_by_tags(
    query_tags: Iterable[str],
    documents: Iterable[Document],
    limit: int = 15,
) -> list[int]:
    """Ids of the top ``limit`` documents by tag-overlap score."""
    return [s.document_id for s in rank_documents_by_tags(query_tags, documents)[:limit]]
