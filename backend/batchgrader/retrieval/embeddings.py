"""Embedding providers and vector similarity."""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol

import numpy as np

from batchgrader.errors import ExternalServiceError, MissingDependencyError
from batchgrader.settings import settings

logger = logging.getLogger(__name__)

MAX_EMBEDDING_INPUT_CHARS = 8000
EMBEDDING_BATCH_SIZE = 100


class Embedder(Protocol):
    name: str

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in order."""


def cosine_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against each row of matrix."""
    query_vec = np.asarray(query, dtype=np.float32).reshape(-1)
    rows = np.asarray(matrix, dtype=np.float32)
    if rows.ndim == 1:
        rows = rows.reshape(1, -1)
    if rows.size == 0:
        return np.zeros((0,), dtype=np.float32)
    if rows.shape[1] != query_vec.shape[0]:
        raise ValueError(f"Vector dim {rows.shape[1]} != query dim {query_vec.shape[0]}")
    norms = np.linalg.norm(rows, axis=1) * np.linalg.norm(query_vec)
    dots = rows @ query_vec
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


class OpenAIEmbedder:
    name = "openai"

    def __init__(self, model: str | None = None, dimensions: int | None = None, client: Any = None) -> None:
        if client is None:
            api_key = os.getenv("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise MissingDependencyError("OPENAI_API_KEY is not set")

            from openai import OpenAI

            client = OpenAI(api_key=api_key)
        self._client = client
        self._model = model or settings.embedding_model
        self._dimensions = dimensions or settings.embedding_dimensions

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = [text[:MAX_EMBEDDING_INPUT_CHARS] for text in texts[offset : offset + EMBEDDING_BATCH_SIZE]]
            try:
                response = self._client.embeddings.create(model=self._model, input=batch, dimensions=self._dimensions)
            except Exception as exc:
                raise ExternalServiceError(
                    service="openai-embeddings",
                    status_code=getattr(exc, "status_code", None),
                    body=str(exc),
                    message=f"Embedding request failed: {exc}",
                ) from exc
            ordered = sorted(response.data, key=lambda item: item.index)
            vectors.extend(list(item.embedding) for item in ordered)
            logger.debug("embedded batch", extra={"count": len(batch), "model": self._model})
        return vectors


def get_embedder(name: str) -> Embedder | None:
    """Return the configured embedder, or None when retrieval is disabled."""
    provider = name.lower()
    if provider in {"none", ""}:
        return None
    if provider == "openai":
        return OpenAIEmbedder()
    raise MissingDependencyError(f"Unknown embedder '{name}'. Use one of: openai, none")
