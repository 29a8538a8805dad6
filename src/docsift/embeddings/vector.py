"""Embedding value type, blob codec and the cosine similarity primitive."""

from collections.abc import Iterable, Sequence

import numpy as np

from ..errors import DimensionMismatchError

# Little-endian float32, 4 bytes per dimension, for storage and retrieval alike
BLOB_DTYPE = np.dtype("<f4")


class EmbeddingVector:
    """An immutable, fixed-length float32 embedding."""

    __slots__ = ("_values",)

    def __init__(self, values: Iterable[float] | np.ndarray):
        arr = np.array(values, dtype=np.float32)
        if arr.ndim != 1 or arr.size == 0:
            raise ValueError("An embedding must be a non-empty one-dimensional vector")
        if not np.all(np.isfinite(arr)):
            raise ValueError("An embedding may not contain NaN or infinite values")
        arr.setflags(write=False)
        self._values = arr

    @property
    def dimensions(self) -> int:
        return int(self._values.shape[0])

    @property
    def values(self) -> np.ndarray:
        """Read-only float32 view of the vector."""
        return self._values

    def tolist(self) -> list[float]:
        return self._values.tolist()

    def to_blob(self) -> bytes:
        """Pack as little-endian float32 (4 bytes per dimension)."""
        return self._values.astype(BLOB_DTYPE, copy=False).tobytes()

    @classmethod
    def from_blob(cls, blob: bytes, dimensions: int | None = None) -> "EmbeddingVector":
        """Decode a packed blob, validating its width.

        Raises:
            DimensionMismatchError: if the blob is not a whole number of float32
                values or does not hold ``dimensions`` values.
        """
        if not blob or len(blob) % BLOB_DTYPE.itemsize:
            raise DimensionMismatchError(
                f"Embedding blob of {len(blob) if blob else 0} bytes is not a whole number of float32 values"
            )
        found = len(blob) // BLOB_DTYPE.itemsize
        if dimensions is not None and found != dimensions:
            raise DimensionMismatchError(f"Expected {dimensions}-dimensional embedding, blob holds {found}")
        return cls(np.frombuffer(blob, dtype=BLOB_DTYPE))

    def __len__(self) -> int:
        return self.dimensions

    def __iter__(self):
        return iter(self.tolist())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EmbeddingVector):
            return NotImplemented
        return bool(np.array_equal(self._values, other._values))

    def __hash__(self) -> int:
        return hash(self.to_blob())

    def __repr__(self) -> str:
        head = ", ".join(f"{v:.4f}" for v in self._values[:3])
        more = ", ..." if self.dimensions > 3 else ""
        return f"EmbeddingVector([{head}{more}], dimensions={self.dimensions})"


def embedding_to_blob(values: Sequence[float] | EmbeddingVector) -> bytes:
    vec = values if isinstance(values, EmbeddingVector) else EmbeddingVector(values)
    return vec.to_blob()


def blob_to_embedding(blob: bytes, dimensions: int | None = None) -> EmbeddingVector:
    return EmbeddingVector.from_blob(blob, dimensions)


def _as_array(v: EmbeddingVector | Sequence[float] | np.ndarray) -> np.ndarray:
    if isinstance(v, EmbeddingVector):
        return v.values.astype(np.float64)
    return np.asarray(v, dtype=np.float64)


def cosine_similarity(
    a: EmbeddingVector | Sequence[float] | np.ndarray,
    b: EmbeddingVector | Sequence[float] | np.ndarray,
) -> float:
    """Cosine of the angle between two vectors; 0.0 when either has zero norm."""
    va, vb = _as_array(a), _as_array(b)
    if va.shape != vb.shape:
        raise DimensionMismatchError(f"Cannot compare vectors of length {va.shape[0]} and {vb.shape[0]}")
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def mean_embedding(vectors: Sequence[EmbeddingVector]) -> EmbeddingVector | None:
    """Element-wise average of equally sized vectors, or None for an empty input."""
    if not vectors:
        return None
    dims = {v.dimensions for v in vectors}
    if len(dims) > 1:
        raise DimensionMismatchError(f"Cannot average embeddings of mixed dimensionality: {sorted(dims)}")
    stacked = np.vstack([v.values.astype(np.float64) for v in vectors])
    return EmbeddingVector(stacked.mean(axis=0))
