"""Tests for document processing and file ingestion."""

import threading

import anthropic
import httpx
import pytest

from docsift.embeddings.vector import EmbeddingVector
from docsift.errors import DocumentNotFound, EmbeddingError, EmptyDocumentError, IngestCancelled
from docsift.ingest.processor import (
    DocumentLocks,
    DocumentProcessor,
    compute_content_hash,
    compute_file_hash,
    ingest_directory,
    ingest_file,
)
from docsift.ingest.chunker import chunk_text
from docsift.ingest.tagger import DocumentTagger
from docsift.models import Document
from docsift.storage import ChunkFilter
from docsift.storage.sql import SqlChunkRepository

from conftest import FakeEmbedder, FakeLLM, hashed_vector

SMALL_CHUNKS = {"target_words": 20, "overlap_words": 5, "min_words": 1}


def _paragraphs(n, prefix="word"):
    return "\n\n".join(" ".join(f"{prefix}{i}x{j}" for j in range(15)) for i in range(n))


def _processor(repo, embedder, **kwargs):
    kwargs.setdefault("chunking", SMALL_CHUNKS)
    return DocumentProcessor(repo, embedder, **kwargs)


def test_compute_hashes():
    assert compute_content_hash("Hello  World\n") == compute_content_hash("hello world")
    assert compute_content_hash("hello") != compute_content_hash("world")
    assert compute_file_hash(b"Hello") != compute_file_hash(b"hello")
    assert len(compute_file_hash(b"")) == 64


def test_document_locks_are_per_document():
    locks = DocumentLocks()
    assert locks.get(1) is locks.get(1)
    assert locks.get(1) is not locks.get(2)

    locks.discard(1)
    assert len(locks) == 1
    locks.discard(1)


def test_process_stores_chunks_in_order(repo):
    # Earlier chunks finish last, the stored order must not change
    embedder = FakeEmbedder(delay=lambda text: 0.02 if "word0x" in text else 0.0)
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    text = _paragraphs(6)

    result = _processor(repo, embedder, workers=4).process(doc.id, text, raw_bytes=text.encode())

    chunks = repo.chunks_for_document(doc.id)
    assert result.chunk_count == len(chunks) > 1
    assert [c.index for c in chunks] == list(range(len(chunks)))
    assert chunks[0].content.startswith("word0x0")
    for chunk in chunks:
        assert chunk.embedding == EmbeddingVector(hashed_vector(chunk.content))

    stored = repo.get_document(doc.id)
    assert stored.processed and not stored.processing_failed
    assert stored.word_count == sum(c.word_count for c in chunks)
    assert stored.content_hash == compute_content_hash(text)
    assert stored.file_hash == compute_file_hash(text.encode())


def test_failed_embedding_marks_document_and_keeps_old_chunks(repo):
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    _processor(repo, FakeEmbedder()).process(doc.id, _paragraphs(3))
    before = repo.chunks_for_document(doc.id)

    broken = FakeEmbedder(fail_on="BOOM")
    with pytest.raises(EmbeddingError):
        _processor(repo, broken).process(doc.id, _paragraphs(2) + "\n\nBOOM goes the provider")

    stored = repo.get_document(doc.id)
    assert not stored.processed
    assert stored.processing_failed
    assert repo.chunks_for_document(doc.id) == before


def test_cancel_stops_before_embedding(repo):
    embedder = FakeEmbedder()
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(IngestCancelled):
        _processor(repo, embedder).process(doc.id, _paragraphs(4), cancel=cancel)

    assert embedder.calls == []
    assert repo.get_document(doc.id).processing_failed
    assert repo.chunks_for_document(doc.id) == []


def test_empty_text_is_rejected(repo):
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    with pytest.raises(EmptyDocumentError):
        _processor(repo, FakeEmbedder()).process(doc.id, "   \n\n  ")
    assert repo.get_document(doc.id).processing_failed


def test_unknown_document(repo):
    with pytest.raises(DocumentNotFound):
        _processor(repo, FakeEmbedder()).process(404, "text")


def test_reprocessing_replaces_chunks(repo):
    processor = _processor(repo, FakeEmbedder())
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    processor.process(doc.id, _paragraphs(5))
    processor.process(doc.id, "Just one short paragraph now.")

    chunks = repo.chunks_for_document(doc.id)
    assert [c.content for c in chunks] == ["Just one short paragraph now."]


def test_duplicates_are_detected_and_recorded(repo):
    processor = _processor(repo, FakeEmbedder())
    first = repo.add_document(Document(name="First", path="/first.txt"))
    second = repo.add_document(Document(name="Second", path="/second.txt"))
    text = _paragraphs(3)

    assert not processor.process(first.id, text).duplicates.has_matches
    result = processor.process(second.id, text.upper())

    assert [d.id for d in result.duplicates.content_matches] == [first.id]
    assert result.duplicates.file_matches == []
    assert (first.id, 1.0) in [(e.target_id, e.confidence) for e in result.lineage]


def test_from_config(repo):
    config = {
        "chunking": {"target_words": 300, "overlap_words": 30, "min_words": 10},
        "embedding": {"workers": 2},
        "dedup": {"near_duplicate_threshold": 0.8},
    }
    processor = DocumentProcessor.from_config(config, repo, FakeEmbedder())
    assert processor.workers == 2
    assert processor.chunking["target_words"] == 300
    assert processor.detector.threshold == 0.8


def test_ingest_markdown_file(tmp_path, repo):
    path = tmp_path / "policy.md"
    path.write_text(
        "---\ntitle: Onboarding Policy\ntags: [aml, kyc]\n---\n# Onboarding\n\n" + _paragraphs(3)
    )
    processor = _processor(repo, FakeEmbedder())

    result = ingest_file(path, processor)

    assert result.document.name == "Onboarding Policy"
    assert result.document.tags == ["aml", "kyc"]
    assert result.document.processed
    assert result.document.file_hash == compute_file_hash(path.read_bytes())

    # Same path again reuses the document
    again = ingest_file(path, processor)
    assert again.document.id == result.document.id
    assert len(repo.list_documents()) == 1


def test_ingest_unsupported_file(tmp_path, repo):
    path = tmp_path / "data.xyz"
    path.write_text("unsupported")
    assert ingest_file(path, _processor(repo, FakeEmbedder())) is None


def test_ingest_directory(tmp_path, repo):
    (tmp_path / "a.txt").write_text(_paragraphs(2, "alpha"))
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.md").write_text("# B\n\n" + _paragraphs(2, "beta"))
    (tmp_path / ".hidden.txt").write_text("skip me")
    (tmp_path / "empty.txt").write_text("   ")
    errors = []

    results = ingest_directory(tmp_path, _processor(repo, FakeEmbedder()), on_error=lambda p, e: errors.append(p.name))

    # Over-long first lines fall back to the file name as title
    assert sorted(r.document.name for r in results) == ["B", "a"]
    assert errors == ["empty.txt"]


def _contents(text):
    return [p.content for p in chunk_text(text, **SMALL_CHUNKS)]


def test_concurrent_processing_of_one_document_is_serialised(tmp_path):
    repo = SqlChunkRepository(f"sqlite:///{tmp_path / 'store.db'}")
    embedder = FakeEmbedder(delay=lambda text: 0.005)
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    texts = {"alpha": _paragraphs(4, "alpha"), "beta": _paragraphs(5, "beta")}
    processor = _processor(repo, embedder, workers=2)
    start = threading.Barrier(2)
    errors = []

    def run(text):
        start.wait()
        try:
            processor.process(doc.id, text)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(text,)) for text in texts.values()]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    # Embedding calls of the two runs must not interleave
    order = ["alpha" if call.startswith("alpha") else "beta" for call in embedder.calls]
    first, last = order[0], order[-1]
    assert first != last
    switch = order.index(last)
    assert set(order[:switch]) == {first}
    assert set(order[switch:]) == {last}

    stored = [c.content for c in repo.chunks_for_document(doc.id)]
    assert stored == _contents(texts[last])
    assert repo.get_document(doc.id).processed


def test_readers_never_see_a_partial_chunk_set(tmp_path):
    repo = SqlChunkRepository(f"sqlite:///{tmp_path / 'store.db'}")
    doc = repo.add_document(Document(name="Doc", path="/doc.txt"))
    texts = [_paragraphs(6, "alpha"), _paragraphs(3, "beta")]
    expected = [_contents(t) for t in texts]
    processor = _processor(repo, FakeEmbedder(), workers=2)
    processor.process(doc.id, texts[0])

    done = threading.Event()
    seen = []

    def read():
        while True:
            seen.append([c.content for c in repo.chunks_for_document(doc.id)])
            if done.is_set():
                break

    reader = threading.Thread(target=read)
    reader.start()
    try:
        for i in range(6):
            processor.process(doc.id, texts[(i + 1) % 2])
    finally:
        done.set()
        reader.join()

    assert seen
    assert all(snapshot in expected for snapshot in seen)


def test_delete_document_releases_per_document_state(repo):
    processor = _processor(repo, FakeEmbedder())
    a = repo.add_document(Document(name="A", path="/a.txt"))
    b = repo.add_document(Document(name="B", path="/b.txt"))
    processor.process(a.id, _paragraphs(2, "alpha"))
    processor.process(b.id, _paragraphs(2, "beta"))
    assert len(processor.locks) == 2
    assert a.id in processor.detector._means

    processor.delete_document(a.id)

    assert repo.get_document(a.id) is None
    assert len(processor.locks) == 1
    assert a.id not in processor.detector._means
    with pytest.raises(DocumentNotFound):
        processor.delete_document(a.id)
    assert len(processor.locks) == 1


def test_reingest_clears_removed_frontmatter_tags(tmp_path, repo):
    path = tmp_path / "policy.md"
    path.write_text("---\ntags: [aml, kyc]\n---\n# Policy\n\n" + _paragraphs(2))
    processor = _processor(repo, FakeEmbedder())
    assert ingest_file(path, processor).document.tags == ["aml", "kyc"]

    path.write_text("---\ntags: []\n---\n# Policy\n\n" + _paragraphs(2))
    assert ingest_file(path, processor).document.tags == []

    path.write_text("# Policy\n\n" + _paragraphs(2))
    assert ingest_file(path, processor).document.tags == []


def test_frontmatter_fields_are_filterable(tmp_path, repo):
    path = tmp_path / "policy.md"
    path.write_text(
        "---\ndoc_type: policy\njurisdiction: EU\nowner: compliance\n---\n# AML Policy\n\n" + _paragraphs(2)
    )
    result = ingest_file(path, _processor(repo, FakeEmbedder()))

    assert (result.document.doc_type, result.document.jurisdiction) == ("policy", "EU")
    hits = repo.filtered_chunks(ChunkFilter(metadata={"doc_type": "policy", "jurisdiction": "EU"}))
    assert hits
    assert {h.document_id for h in hits} == {result.document.id}
    assert repo.filtered_chunks(ChunkFilter(metadata={"doc_type": "contract"})) == []


def test_auto_tagging_fills_fields_frontmatter_left_open(tmp_path, repo):
    path = tmp_path / "contract.md"
    path.write_text("---\njurisdiction: PL\ntags: [vendor]\n---\n# Contract\n\n" + _paragraphs(2))
    llm = FakeLLM(
        '```json\n{"doc_type": "Contract", "client": "Acme", "jurisdiction": "DE", '
        '"tags": ["Outsourcing", "vendor"], "language": "english", "sensitivity": "confidential"}\n```'
    )

    result = ingest_file(path, _processor(repo, FakeEmbedder()), tagger=DocumentTagger(llm))

    doc = result.document
    assert doc.doc_type == "contract"
    assert doc.client == "Acme"
    assert doc.jurisdiction == "PL"
    assert doc.language == "English"
    assert doc.sensitivity == "confidential"
    assert doc.tags == ["vendor", "outsourcing"]
    assert doc.processed
    assert len(llm.requests) == 1


def test_auto_tagging_failure_does_not_fail_ingest(tmp_path, repo):
    path = tmp_path / "policy.md"
    path.write_text("---\ntags: [aml]\n---\n# Policy\n\n" + _paragraphs(2))
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    tagger = DocumentTagger(FakeLLM(error=anthropic.APIConnectionError(request=request)))

    result = ingest_file(path, _processor(repo, FakeEmbedder()), tagger=tagger)

    assert result.document.processed
    assert result.document.doc_type is None
    assert result.document.tags == ["aml"]


def test_failed_processing_skips_auto_tagging(tmp_path, repo):
    path = tmp_path / "broken.txt"
    path.write_text("BROKEN " + _paragraphs(2))
    llm = FakeLLM('{"doc_type": "memo"}')

    with pytest.raises(EmbeddingError):
        ingest_file(path, _processor(repo, FakeEmbedder(fail_on="BROKEN")), tagger=DocumentTagger(llm))
    assert llm.requests == []
