"""Tests for query tag extraction and tag-overlap scoring."""

import anthropic
import httpx
import pytest

from docsift.models import Document
from docsift.query.tags import (
    MAX_QUERY_TAGS,
    TagExtractor,
    TagsFallback,
    TagsOk,
    normalize_tag,
    parse_tag_response,
    rank_documents_by_tags,
    score_documents_by_tags,
)

from conftest import FakeLLM


def _doc(doc_id, tags):
    return Document(name=f"doc-{doc_id}", path=f"/{doc_id}", id=doc_id, tags=tags)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("AML", "aml"),
        ("  Customer Due_Diligence ", "customer-due-diligence"),
        ("GDPR (Art. 30)", "gdpr-art-30"),
        ("--kyc---review--", "kyc-review"),
        ("!!!", ""),
    ],
)
def test_normalize_tag(raw, expected):
    assert normalize_tag(raw) == expected


def test_parse_plain_array():
    assert parse_tag_response('["AML", "kyc", "Sanctions Screening"]') == TagsOk(("aml", "kyc", "sanctions-screening"))


def test_parse_fenced_array():
    text = 'Here are the tags:\n```json\n["audit", "kyc"]\n```\n'
    assert parse_tag_response(text) == TagsOk(("audit", "kyc"))


def test_parse_array_inside_chatter():
    assert parse_tag_response('Sure! ["audit", 3, "Audit", null, "kyc"] hope that helps') == TagsOk(("audit", "kyc"))


def test_parse_caps_tag_count():
    tags = [f"tag-{i}" for i in range(30)]
    result = parse_tag_response(str(tags).replace("'", '"'))
    assert isinstance(result, TagsOk)
    assert len(result.tags) == MAX_QUERY_TAGS
    assert result.tags[0] == "tag-0"


@pytest.mark.parametrize("text", ["", "   ", "no json here", '{"tags": ["a"]}', "[]", '["", "!!"]'])
def test_unusable_responses_fall_back(text):
    assert isinstance(parse_tag_response(text), TagsFallback)


def test_closer_tag_match_ranks_higher():
    docs = [_doc(2, ["financial-audit"]), _doc(1, ["audit", "kyc-review"])]
    scores = rank_documents_by_tags(["audit", "kyc"], docs)

    assert [(s.document_id, s.score) for s in scores] == [(1, 3), (2, 1)]
    assert score_documents_by_tags(["audit", "kyc"], docs) == [1, 2]


def test_ties_go_to_lower_document_id():
    docs = [_doc(9, ["aml"]), _doc(3, ["aml"]), _doc(5, ["aml"])]
    assert score_documents_by_tags(["aml"], docs) == [3, 5, 9]


def test_scoring_skips_unmatched_and_honours_limit():
    docs = [_doc(i, ["aml", f"topic-{i}"]) for i in range(1, 21)] + [_doc(99, ["tax"])]
    ids = score_documents_by_tags(["AML"], docs, limit=15)
    assert len(ids) == 15
    assert 99 not in ids
    assert score_documents_by_tags([], docs) == []


def test_document_tags_are_normalized_before_matching():
    assert score_documents_by_tags(["customer-due-diligence"], [_doc(1, ["Customer Due Diligence"])]) == [1]


def test_extractor_returns_tags():
    llm = FakeLLM('["AML", "onboarding"]')
    extractor = TagExtractor(llm, model="claude-3-haiku-20240307", max_tokens=100)

    assert extractor.extract("What is our AML onboarding policy?") == TagsOk(("aml", "onboarding"))
    request = llm.requests[0]
    assert request["model"] == "claude-3-haiku-20240307"
    assert request["max_tokens"] == 100
    assert request["messages"] == [{"role": "user", "content": "What is our AML onboarding policy?"}]


def test_extractor_falls_back_on_api_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    extractor = TagExtractor(FakeLLM(error=anthropic.APIConnectionError(request=request)))

    result = extractor.extract("anything")
    assert isinstance(result, TagsFallback)
    assert "Connection error" in result.reason


def test_extractor_falls_back_on_garbage():
    assert isinstance(TagExtractor(FakeLLM("I cannot help with that")).extract("q"), TagsFallback)


def test_from_config_needs_key_and_enabled_flag():
    assert TagExtractor.from_config({"tagging": {"enabled": True}}) is None
    assert TagExtractor.from_config({"claude_api_key": "k", "tagging": {"enabled": False}}) is None
    extractor = TagExtractor.from_config({"claude_api_key": "k", "tagging": {"model": "m", "max_tokens": 64}})
    assert extractor.model == "m"
    assert extractor.max_tokens == 64
