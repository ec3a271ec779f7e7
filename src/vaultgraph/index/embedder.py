from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import httpx
import numpy as np

from ..errors import EmbeddingError


@dataclass(frozen=True)
class EmbeddingResult:
    vectors: np.ndarray  # shape [n, d], float32


class OllamaEmbeddingClient:
    """Remote embeddings via Ollama's `/api/embed` (`{model, input}` -> `{embeddings}`)."""

    def __init__(self, *, base_url: str, model: str, timeout_s: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = float(timeout_s)

    def embed_texts(self, texts: list[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult(vectors=np.zeros((0, 0), dtype=np.float32))

        url = f"{self.base_url}/api/embed"
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                r = client.post(url, json={"model": self.model, "input": list(texts)})
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Failed to reach embedding service at {self.base_url} ({e})") from e

        if r.status_code != 200:
            raise EmbeddingError(f"Embedding error {r.status_code}: {r.text}")

        try:
            data = r.json()
        except ValueError as e:
            raise EmbeddingError(f"Embedding service returned non-JSON body: {r.text[:200]}") from e

        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            got = len(embeddings) if isinstance(embeddings, list) else None
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {got}")
        return EmbeddingResult(vectors=np.array(embeddings, dtype=np.float32))


class Embedder:
    """Local embeddings with fastembed, L2-normalized.

    Backend failures surface as `EmbeddingError`, same as the remote client.
    """

    def __init__(self, model_name: str, *, model: Any = None):
        self.model_name = model_name
        if model is None:
            # Import here so the CLI still runs with the remote backend only.
            from fastembed import TextEmbedding  # type: ignore

            try:
                model = TextEmbedding(model_name=model_name)
            except Exception as e:
                raise EmbeddingError(f"Could not load fastembed model {model_name!r} ({e})") from e
        self._model = model

    def embed_texts(self, texts: list[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult(vectors=np.zeros((0, 0), dtype=np.float32))

        try:
            rows = list(self._model.embed(list(texts)))
        except Exception as e:
            raise EmbeddingError(f"fastembed {self.model_name} failed on {len(texts)} texts ({e})") from e

        if len(rows) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(rows)}")
        vectors = np.asarray(rows, dtype=np.float32)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        return EmbeddingResult(vectors=vectors / np.maximum(norms, 1e-12))


def truncate_embedding(embedding: Sequence[float] | np.ndarray, dims: int) -> np.ndarray:
    """Keep the first `dims` components and re-normalize.

    Matryoshka-trained models keep most of their quality when truncated.
    """
    truncated = np.asarray(embedding, dtype=np.float32)[:dims]
    norm = float(np.linalg.norm(truncated))
    if norm == 0.0:
        return truncated
    return truncated / norm
