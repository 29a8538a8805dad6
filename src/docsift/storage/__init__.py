"""Storage for documents, chunks and lineage."""

from .base import FILTERABLE_FIELDS, ChunkFilter, ChunkRepository, get_chunk_repository

__all__ = ["FILTERABLE_FIELDS", "ChunkFilter", "ChunkRepository", "get_chunk_repository"]
