"""Embedding clients: a remote HTTP provider and a local sentence-transformers model."""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ConfigError, DimensionMismatchError, EmbeddingError
from .vector import EmbeddingVector

logger = logging.getLogger(__name__)

_STATUS_CHECK_TEXT = "docsift availability check"


class _TransientStatus(Exception):
    """A 5xx reply from the embedding provider."""

    def __init__(self, status_code: int):
        super().__init__(f"provider returned {status_code}")
        self.status_code = status_code


_RETRYABLE = (requests.exceptions.Timeout, requests.exceptions.ConnectionError, _TransientStatus)


@dataclass(frozen=True)
class ProviderStatus:
    available: bool
    error: str | None = None


class EmbeddingClient(ABC):
    """Maps text to fixed-length vectors.

    Subclasses implement ``_embed`` for one provider call. This base class
    truncates oversized input, splits batches, and keeps every returned vector
    at one dimensionality for the lifetime of the client.
    """

    def __init__(self, max_input_chars: int = 32000, batch_size: int = 64, dimensions: int | None = None):
        if batch_size <= 0:
            raise ConfigError("embedding.batch_size must be positive")
        self.max_input_chars = max_input_chars
        self.batch_size = batch_size
        self._dimensions = dimensions
        self._lock = threading.Lock()

    @property
    def dimensions(self) -> int | None:
        """Width of the vectors this client produces, once known."""
        return self._dimensions

    @abstractmethod
    def _embed(self, texts: list[str]) -> list[EmbeddingVector]:
        """One provider call. Must return vectors in the order of ``texts``."""

    def truncate(self, text: str) -> str:
        if self.max_input_chars and len(text) > self.max_input_chars:
            logger.debug(f"Truncating embedding input from {len(text)} to {self.max_input_chars} chars")
            return text[: self.max_input_chars]
        return text

    def embed(self, text: str) -> EmbeddingVector:
        return self.embed_batch([text])[0]

    def embed_query(self, text: str) -> EmbeddingVector:
        """Embed a search query. Same as ``embed`` unless the model distinguishes queries."""
        return self.embed(text)

    def embed_batch(self, texts: list[str]) -> list[EmbeddingVector]:
        """Embed many texts; output position i belongs to input position i."""
        if not texts:
            return []
        prepared = [self.truncate(t) for t in texts]
        vectors: list[EmbeddingVector] = []
        for start in range(0, len(prepared), self.batch_size):
            batch = prepared[start:start + self.batch_size]
            result = self._embed(batch)
            if len(result) != len(batch):
                raise EmbeddingError(f"Provider returned {len(result)} embeddings for {len(batch)} inputs")
            vectors.extend(result)
        for vec in vectors:
            self._check_dimensions(vec)
        return vectors

    def check_status(self) -> ProviderStatus:
        """Single small test call so callers can fail fast before a large job."""
        try:
            self.embed(_STATUS_CHECK_TEXT)
        except Exception as e:
            logger.warning(f"Embedding provider unavailable: {e}")
            return ProviderStatus(available=False, error=str(e))
        return ProviderStatus(available=True)

    def _check_dimensions(self, vec: EmbeddingVector) -> None:
        with self._lock:
            if self._dimensions is None:
                self._dimensions = vec.dimensions
            elif vec.dimensions != self._dimensions:
                raise DimensionMismatchError(
                    f"Provider returned a {vec.dimensions}-dimensional embedding, expected {self._dimensions}"
                )


class HttpEmbeddingClient(EmbeddingClient):
    """Client for OpenAI/Voyage-style ``POST /embeddings`` endpoints.

    Request ``{"model", "input": str | list[str]}``; response
    ``{"data": [{"embedding": [...], "index": n}]}``. Results are matched to
    inputs by ``index``, never by array position.
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.voyageai.com/v1",
        model: str = "voyage-3",
        timeout: float = 30,
        retries: int = 1,
        backoff: float = 0.5,
        max_input_chars: int = 32000,
        batch_size: int = 64,
        dimensions: int | None = None,
    ):
        if not api_key:
            raise ConfigError(
                "Embedding API key required. Set DOCSIFT_EMBEDDING_API_KEY (or VOYAGE_API_KEY / OPENAI_API_KEY) "
                "or embedding.api_key in config."
            )
        super().__init__(max_input_chars=max_input_chars, batch_size=batch_size, dimensions=dimensions)
        self.api_key = api_key
        self.url = base_url.rstrip("/") + "/embeddings"
        self.model = model
        self.timeout = timeout
        self.retries = max(0, retries)
        self.backoff = backoff

    def _embed(self, texts: list[str]) -> list[EmbeddingVector]:
        payload = {"model": self.model, "input": texts[0] if len(texts) == 1 else texts}
        body = self._post(payload)
        return self._parse_response(body, len(texts))

    def _post(self, payload: dict[str, Any]) -> Any:
        send = retry(
            retry=retry_if_exception_type(_RETRYABLE),
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.backoff, max=10),
            before_sleep=lambda retry_state: logger.warning(
                f"Embedding request failed ({retry_state.outcome.exception()}), "
                f"retrying ({retry_state.attempt_number}/{self.retries})"
            ),
            reraise=True,
        )(self._send)
        try:
            response = send(payload)
        except _RETRYABLE as e:
            raise EmbeddingError(f"Embedding request to {self.url} failed after {self.retries + 1} attempt(s): {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise EmbeddingError("Embedding provider returned a non-JSON body") from e

    def _send(self, payload: dict[str, Any]) -> requests.Response:
        """One POST. Server errors raise ``_TransientStatus`` so they can be retried."""
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        if response.status_code in (401, 403):
            raise EmbeddingError(f"Embedding provider rejected credentials ({response.status_code})")
        if response.status_code >= 500:
            raise _TransientStatus(response.status_code)
        if response.status_code >= 400:
            raise EmbeddingError(f"Embedding provider error {response.status_code}: {response.text[:300]}")
        return response

    @staticmethod
    def _parse_response(body: Any, expected: int) -> list[EmbeddingVector]:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise EmbeddingError("Malformed embedding response: missing 'data' list")

        by_index: dict[int, EmbeddingVector] = {}
        for item in data:
            if not isinstance(item, dict):
                raise EmbeddingError("Malformed embedding response: entries must be objects")
            index = item.get("index")
            if index is None and expected == 1:
                index = 0
            if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < expected:
                raise EmbeddingError(f"Malformed embedding response: bad index {index!r}")
            if index in by_index:
                raise EmbeddingError(f"Malformed embedding response: duplicate index {index}")

            values = item.get("embedding")
            if not isinstance(values, list) or not values:
                raise EmbeddingError(f"Malformed embedding response: missing vector for index {index}")
            try:
                by_index[index] = EmbeddingVector(values)
            except (TypeError, ValueError) as e:
                raise EmbeddingError(f"Malformed embedding vector for index {index}: {e}") from e

        if len(by_index) != expected:
            raise EmbeddingError(f"Provider returned {len(by_index)} embeddings for {expected} inputs")
        return [by_index[i] for i in range(expected)]


class LocalEmbeddingClient(EmbeddingClient):
    """Embeds in-process with sentence-transformers."""

    def __init__(
        self,
        model_name: str = "intfloat/e5-large-v2",
        max_input_chars: int = 32000,
        batch_size: int = 32,
        dimensions: int | None = None,
    ):
        super().__init__(max_input_chars=max_input_chars, batch_size=batch_size, dimensions=dimensions)
        self.model_name = model_name
        self._model = None
        # e5 models need "passage: " / "query: " prefixes
        self._e5 = "e5" in model_name.lower()

    @property
    def model(self):
        """Lazy-load the embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _embed(self, texts: list[str]) -> list[EmbeddingVector]:
        if self._e5:
            texts = [t if t.startswith("query: ") else f"passage: {t}" for t in texts]
        try:
            encoded = self.model.encode(texts)
        except (RuntimeError, ValueError, OSError) as e:
            raise EmbeddingError(f"Local embedding with {self.model_name} failed: {e}") from e
        return [EmbeddingVector(row) for row in encoded]

    def embed_query(self, text: str) -> EmbeddingVector:
        if self._e5:
            return self.embed(f"query: {text}")
        return self.embed(text)


def get_embedding_client(config: dict[str, Any]) -> EmbeddingClient:
    """Factory: return the embedding client the config asks for."""
    cfg = config.get("embedding", {})
    backend = cfg.get("backend", "http")

    if backend == "http":
        return HttpEmbeddingClient(
            api_key=cfg.get("api_key"),
            base_url=cfg.get("base_url", "https://api.voyageai.com/v1"),
            model=cfg.get("model", "voyage-3"),
            timeout=cfg.get("timeout", 30),
            retries=cfg.get("retries", 1),
            backoff=cfg.get("retry_backoff", 0.5),
            max_input_chars=cfg.get("max_input_chars", 32000),
            batch_size=cfg.get("batch_size", 64),
            dimensions=cfg.get("dimensions"),
        )
    elif backend == "local":
        return LocalEmbeddingClient(
            model_name=cfg.get("local_model", "intfloat/e5-large-v2"),
            max_input_chars=cfg.get("max_input_chars", 32000),
            batch_size=cfg.get("batch_size", 32),
            dimensions=cfg.get("dimensions"),
        )
    else:
        raise ConfigError(f"Unknown embedding backend: {backend}")
