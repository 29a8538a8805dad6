"""Document auto-tagging: one Claude call classifies a document at ingest time."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import anthropic

from ..errors import DocumentNotFound
from ..query.prompts import DOCUMENT_METADATA_PROMPT
from ..query.tags import normalize_tag
from ..storage import ChunkRepository

logger = logging.getLogger(__name__)

DOC_TYPES = ("contract", "invoice", "letter", "report", "application", "policy", "memo", "minutes", "form", "other")
JURISDICTIONS = ("EU", "US", "UK", "DE", "PL", "FR", "ES", "international")
LANGUAGES = ("English", "Polish", "German", "French", "Spanish", "other")
SENSITIVITIES = ("public", "internal", "confidential", "restricted")
MAX_DOCUMENT_TAGS = 5
# Only the head of a document is sent for classification
MAX_WORDS = 2000


@dataclass
class DocumentMetadata:
    doc_type: str = "other"
    client: str | None = None
    jurisdiction: str | None = None
    tags: list[str] = field(default_factory=list)
    language: str = "other"
    sensitivity: str = "internal"
    error: str | None = None

    def document_fields(self) -> dict[str, Any]:
        """Columns to write onto the document row."""
        return {
            "doc_type": self.doc_type,
            "client": self.client,
            "jurisdiction": self.jurisdiction,
            "language": self.language,
            "sensitivity": self.sensitivity,
        }


def _load_json_object(text: str) -> Any:
    text = text.strip()
    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    return None


def _pick(value: Any, allowed: tuple[str, ...], default: str | None) -> str | None:
    if not isinstance(value, str):
        return default
    for option in allowed:
        if option.lower() == value.strip().lower():
            return option
    return default


def parse_metadata_response(text: str) -> DocumentMetadata:
    """Validate a classification response; unknown values fall back to defaults."""
    parsed = _load_json_object(text or "")
    if not isinstance(parsed, dict):
        return DocumentMetadata(error="response did not contain a JSON object")

    client = parsed.get("client")
    if not isinstance(client, str) or not client.strip():
        client = None
    else:
        client = client.strip()

    tags: list[str] = []
    raw_tags = parsed.get("tags")
    for item in raw_tags if isinstance(raw_tags, list) else []:
        tag = normalize_tag(item) if isinstance(item, str) else ""
        if tag and tag not in tags:
            tags.append(tag)

    return DocumentMetadata(
        doc_type=_pick(parsed.get("doc_type"), DOC_TYPES, "other"),
        client=client,
        jurisdiction=_pick(parsed.get("jurisdiction"), JURISDICTIONS, None),
        tags=tags[:MAX_DOCUMENT_TAGS],
        language=_pick(parsed.get("language"), LANGUAGES, "other"),
        sensitivity=_pick(parsed.get("sensitivity"), SENSITIVITIES, "internal"),
    )


class DocumentTagger:
    """Classifies document text into filterable metadata fields and tags."""

    def __init__(self, client: Any, model: str = "claude-3-haiku-20240307", max_tokens: int = 512):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "DocumentTagger | None":
        """Build a tagger, or None when auto-tagging is off or no API key is set."""
        tag_cfg = config.get("tagging", {})
        if not tag_cfg.get("auto_tag_documents", True):
            return None
        api_key = config.get("claude_api_key")
        if not api_key:
            logger.info("No Claude API key configured; document auto-tagging disabled")
            return None
        client = anthropic.Anthropic(api_key=api_key, timeout=tag_cfg.get("timeout", 20))
        return cls(
            client,
            model=tag_cfg.get("model", "claude-3-haiku-20240307"),
            max_tokens=tag_cfg.get("document_max_tokens", 512),
        )

    def extract(self, text: str) -> DocumentMetadata:
        """Metadata for a document. Failures return defaults with ``error`` set."""
        excerpt = " ".join(text.split()[:MAX_WORDS])
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=DOCUMENT_METADATA_PROMPT,
                messages=[{"role": "user", "content": excerpt}],
            )
        except anthropic.APIError as e:
            logger.warning(f"Document auto-tagging failed: {e}")
            return DocumentMetadata(error=str(e))

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        metadata = parse_metadata_response(text)
        if metadata.error:
            logger.warning(f"Could not parse document metadata ({metadata.error})")
        return metadata


def apply_document_metadata(
    repository: ChunkRepository,
    document_id: int,
    metadata: DocumentMetadata,
    base_tags: list[str] | None = None,
    preserve: frozenset[str] = frozenset(),
) -> None:
    """Write auto-tagged metadata onto a document.

    Fields named in ``preserve`` were set explicitly and are left alone.
    ``base_tags`` come first and auto tags are appended after them.
    """
    if metadata.error:
        return
    fields = {k: v for k, v in metadata.document_fields().items() if k not in preserve}
    tags = list(base_tags or [])
    for tag in metadata.tags:
        if tag not in tags:
            tags.append(tag)
    repository.update_document(document_id, tags=tags, **fields)


def retag_document(repository: ChunkRepository, tagger: DocumentTagger, document_id: int) -> DocumentMetadata:
    """Re-run auto-tagging on a stored document from its chunk text."""
    if repository.get_document(document_id) is None:
        raise DocumentNotFound(document_id)
    chunks = repository.chunks_for_document(document_id)
    if not chunks:
        return DocumentMetadata(error="document has no chunks")
    metadata = tagger.extract("\n".join(c.content for c in chunks))
    apply_document_metadata(repository, document_id, metadata)
    return metadata
