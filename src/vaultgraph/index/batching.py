from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

import numpy as np

from ..errors import EmbeddingError, InvalidInput


logger = logging.getLogger(__name__)

BATCH_SIZE = 2048
RATE_LIMIT_DELAY_S = 0.1


def embed_batched(
    texts: Sequence[Any],
    *,
    embedder: Any,
    batch_size: int = BATCH_SIZE,
    delay_s: float = RATE_LIMIT_DELAY_S,
    on_progress: Callable[[int, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> np.ndarray:
    """Embed `texts` in bounded batches; row i of the result belongs to texts[i].

    `embedder` is anything with `embed_texts(list[str]) -> EmbeddingResult`.
    Input is validated up front: nothing is sent if any entry is not a
    non-blank string.
    """
    for i, t in enumerate(texts):
        if not isinstance(t, str) or not t.strip():
            raise InvalidInput(i)
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    total = len(texts)
    if total == 0:
        return np.zeros((0, 0), dtype=np.float32)

    logger.info("Embedding %d texts (%d chars) in batches of %d", total, sum(len(t) for t in texts), batch_size)

    parts: list[np.ndarray] = []
    for start in range(0, total, batch_size):
        if start > 0 and delay_s > 0:
            sleep(delay_s)

        batch = list(texts[start : start + batch_size])
        vectors = np.asarray(embedder.embed_texts(batch).vectors, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != len(batch):
            raise EmbeddingError(
                f"Embedding backend returned {vectors.shape[0] if vectors.ndim else 0} vectors for {len(batch)} texts"
            )
        parts.append(vectors)

        if on_progress is not None:
            on_progress(start + len(batch), total)

    return np.vstack(parts)
