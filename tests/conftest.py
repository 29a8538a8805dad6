"""Shared fixtures and test doubles."""

import hashlib
import threading
import time
from types import SimpleNamespace

import pytest

from docsift.embeddings.embedder import EmbeddingClient
from docsift.embeddings.vector import EmbeddingVector
from docsift.errors import EmbeddingError
from docsift.models import Chunk, Document
from docsift.storage.sql import SqlChunkRepository


def hashed_vector(text: str, dimensions: int = 8) -> list[float]:
    """Deterministic pseudo-embedding in [-1, 1] per dimension."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i] / 127.5 - 1.0 for i in range(dimensions)]


class FakeEmbedder(EmbeddingClient):
    """Embedding client double.

    ``vectors`` pins the vector for specific texts, everything else gets a
    hashed vector. Texts containing ``fail_on`` raise EmbeddingError.
    """

    def __init__(self, vectors=None, dimensions=8, fail_on=None, delay=None):
        super().__init__(batch_size=64)
        self.vectors = dict(vectors or {})
        self.width = dimensions
        self.fail_on = fail_on
        self.delay = delay
        self.calls: list[str] = []
        self._calls_lock = threading.Lock()

    def _embed(self, texts):
        out = []
        for text in texts:
            with self._calls_lock:
                self.calls.append(text)
            if self.delay is not None:
                time.sleep(self.delay(text))
            if self.fail_on and self.fail_on in text:
                raise EmbeddingError(f"provider failed on {text[:20]!r}")
            out.append(EmbeddingVector(self.vectors.get(text) or hashed_vector(text, self.width)))
        return out


class FakeLLM:
    """Anthropic client double: ``client.messages.create`` returns canned text."""

    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.requests: list[dict] = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


@pytest.fixture
def repo():
    return SqlChunkRepository("sqlite:///:memory:")


@pytest.fixture
def embedder():
    return FakeEmbedder()


def add_document(repo, name, vectors=(), **fields):
    """Insert a document with one embedded chunk per vector and mark it processed."""
    doc = repo.add_document(Document(name=name, path=f"/docs/{name}", **fields))
    if vectors:
        repo.replace_chunks(
            doc.id,
            [
                Chunk(doc.id, i, f"{name} chunk {i}", 3, EmbeddingVector(v))
                for i, v in enumerate(vectors)
            ],
        )
        repo.mark_processed(doc.id, 3 * len(vectors))
    return repo.get_document(doc.id)


@pytest.fixture
def make_document(repo):
    return lambda name, vectors=(), **fields: add_document(repo, name, vectors, **fields)
