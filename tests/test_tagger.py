"""Tests for document auto-tagging."""

import anthropic
import httpx
import pytest

from docsift.errors import DocumentNotFound
from docsift.ingest.tagger import (
    MAX_DOCUMENT_TAGS,
    MAX_WORDS,
    DocumentMetadata,
    DocumentTagger,
    apply_document_metadata,
    parse_metadata_response,
    retag_document,
)
from docsift.models import Document

from conftest import FakeLLM


def test_parse_valid_response():
    metadata = parse_metadata_response(
        '{"doc_type": "policy", "client": null, "jurisdiction": "eu", "tags": ["AML", "Sanctions Screening"], '
        '"language": "Polish", "sensitivity": "Restricted"}'
    )
    assert metadata == DocumentMetadata(
        doc_type="policy",
        client=None,
        jurisdiction="EU",
        tags=["aml", "sanctions-screening"],
        language="Polish",
        sensitivity="restricted",
    )


def test_parse_fenced_response_with_chatter():
    text = 'Here you go:\n```json\n{"doc_type": "invoice", "client": " Acme Ltd ", "tags": []}\n```'
    metadata = parse_metadata_response(text)
    assert metadata.doc_type == "invoice"
    assert metadata.client == "Acme Ltd"
    assert metadata.error is None


def test_unknown_values_fall_back_to_defaults():
    metadata = parse_metadata_response(
        '{"doc_type": "novel", "jurisdiction": "Mars", "language": "Klingon", "sensitivity": "secret", '
        '"client": 42, "tags": "not-a-list"}'
    )
    assert metadata == DocumentMetadata()


def test_tags_are_capped():
    tags = ", ".join(f'"tag{i}"' for i in range(8))
    metadata = parse_metadata_response(f'{{"doc_type": "memo", "tags": [{tags}, "tag0"]}}')
    assert metadata.tags == [f"tag{i}" for i in range(MAX_DOCUMENT_TAGS)]


@pytest.mark.parametrize("text", ["", "I cannot classify this.", '["just", "a", "list"]'])
def test_unparseable_responses(text):
    metadata = parse_metadata_response(text)
    assert metadata.error
    assert metadata.doc_type == "other"
    assert metadata.sensitivity == "internal"


def test_extract_sends_document_head():
    llm = FakeLLM('{"doc_type": "report"}')
    tagger = DocumentTagger(llm, model="claude-3-haiku-20240307", max_tokens=300)
    text = " ".join(f"w{i}" for i in range(MAX_WORDS + 500))

    assert tagger.extract(text).doc_type == "report"
    request = llm.requests[0]
    assert request["model"] == "claude-3-haiku-20240307"
    assert request["max_tokens"] == 300
    assert len(request["messages"][0]["content"].split()) == MAX_WORDS


def test_extract_degrades_on_api_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    tagger = DocumentTagger(FakeLLM(error=anthropic.APIConnectionError(request=request)))

    metadata = tagger.extract("Some document.")
    assert metadata.error
    assert metadata.tags == []
    assert metadata.doc_type == "other"


def test_from_config_needs_key_and_flag():
    assert DocumentTagger.from_config({}) is None
    assert DocumentTagger.from_config({"claude_api_key": "k", "tagging": {"auto_tag_documents": False}}) is None

    tagger = DocumentTagger.from_config(
        {"claude_api_key": "k", "tagging": {"model": "claude-3-5-haiku-latest", "document_max_tokens": 400}}
    )
    assert tagger.model == "claude-3-5-haiku-latest"
    assert tagger.max_tokens == 400


def test_apply_skips_failed_metadata(repo):
    doc = repo.add_document(Document(name="Doc", path="/doc", tags=["kept"], doc_type="memo"))
    apply_document_metadata(repo, doc.id, DocumentMetadata(error="provider down"))

    stored = repo.get_document(doc.id)
    assert stored.tags == ["kept"]
    assert stored.doc_type == "memo"


def test_retag_document(make_document, repo):
    doc = make_document("Policy", [[1.0, 0.0]], tags=["old"])
    llm = FakeLLM('{"doc_type": "policy", "tags": ["aml"], "sensitivity": "confidential"}')

    metadata = retag_document(repo, DocumentTagger(llm), doc.id)

    stored = repo.get_document(doc.id)
    assert metadata.doc_type == stored.doc_type == "policy"
    assert stored.sensitivity == "confidential"
    assert stored.tags == ["aml"]
    assert llm.requests[0]["messages"][0]["content"] == "Policy chunk 0"


def test_retag_unknown_or_empty_document(make_document, repo):
    tagger = DocumentTagger(FakeLLM('{"doc_type": "memo"}'))
    with pytest.raises(DocumentNotFound):
        retag_document(repo, tagger, 404)

    empty = make_document("Empty")
    assert retag_document(repo, tagger, empty.id).error == "document has no chunks"
