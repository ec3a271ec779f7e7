import unittest

import numpy as np

from vaultgraph.errors import EmbeddingError, InvalidInput
from vaultgraph.index.batching import embed_batched
from vaultgraph.index.embedder import Embedder, EmbeddingResult, truncate_embedding


class RecordingEmbedder:
    """Encodes each text as [len(text), 1.0] so row order is checkable."""

    def __init__(self):
        self.batches = []

    def embed_texts(self, texts):
        self.batches.append(list(texts))
        return EmbeddingResult(vectors=np.array([[float(len(t)), 1.0] for t in texts], dtype=np.float32))


class ShortEmbedder:
    def embed_texts(self, texts):
        return EmbeddingResult(vectors=np.zeros((len(texts) - 1, 2), dtype=np.float32))


class TestEmbedBatched(unittest.TestCase):
    def test_splits_into_batches_and_preserves_order(self):
        texts = ["x" * (i % 7 + 1) for i in range(3000)]
        embedder = RecordingEmbedder()
        progress = []
        sleeps = []

        out = embed_batched(
            texts,
            embedder=embedder,
            on_progress=lambda done, total: progress.append((done, total)),
            sleep=sleeps.append,
        )

        self.assertEqual([len(b) for b in embedder.batches], [2048, 952])
        self.assertEqual(out.shape, (3000, 2))
        self.assertEqual(out[:, 0].tolist(), [float(len(t)) for t in texts])
        self.assertEqual(progress, [(2048, 3000), (3000, 3000)])
        # Delay only between batches
        self.assertEqual(sleeps, [0.1])

    def test_single_batch_does_not_sleep(self):
        sleeps = []
        out = embed_batched(["a", "b"], embedder=RecordingEmbedder(), sleep=sleeps.append)
        self.assertEqual(out.shape, (2, 2))
        self.assertEqual(sleeps, [])

    def test_invalid_entry_is_rejected_before_any_call(self):
        embedder = RecordingEmbedder()
        with self.assertRaises(InvalidInput) as ctx:
            embed_batched(["ok", "   ", "fine"], embedder=embedder)
        self.assertEqual(ctx.exception.index, 1)
        self.assertEqual(embedder.batches, [])

        with self.assertRaises(InvalidInput) as ctx:
            embed_batched(["ok", None], embedder=embedder)
        self.assertEqual(ctx.exception.index, 1)

    def test_empty_input(self):
        embedder = RecordingEmbedder()
        out = embed_batched([], embedder=embedder)
        self.assertEqual(out.shape[0], 0)
        self.assertEqual(embedder.batches, [])

    def test_count_mismatch_raises(self):
        with self.assertRaises(EmbeddingError):
            embed_batched(["a", "b"], embedder=ShortEmbedder())


class FakeTextEmbedding:
    def __init__(self, fail=False):
        self.fail = fail

    def embed(self, texts):
        if self.fail:
            raise RuntimeError("onnx session crashed")
        for t in texts:
            yield np.array([3.0, 4.0], dtype=np.float32) * len(t)


class TestLocalEmbedder(unittest.TestCase):
    def test_vectors_are_normalized(self):
        embedder = Embedder("test-model", model=FakeTextEmbedding())
        out = embedder.embed_texts(["a", "bbb"])
        self.assertEqual(out.vectors.shape, (2, 2))
        np.testing.assert_allclose(out.vectors, [[0.6, 0.8], [0.6, 0.8]], rtol=1e-6)

    def test_backend_failure_becomes_embedding_error(self):
        embedder = Embedder("test-model", model=FakeTextEmbedding(fail=True))
        with self.assertRaises(EmbeddingError):
            embedder.embed_texts(["a"])

    def test_backend_failure_propagates_through_batching(self):
        with self.assertRaises(EmbeddingError):
            embed_batched(["a", "b"], embedder=Embedder("test-model", model=FakeTextEmbedding(fail=True)))


class TestTruncateEmbedding(unittest.TestCase):
    def test_truncates_and_renormalizes(self):
        vec = np.array([3.0, 4.0, 12.0], dtype=np.float32)
        short = truncate_embedding(vec, 2)
        self.assertEqual(short.shape, (2,))
        np.testing.assert_allclose(short, [0.6, 0.8], rtol=1e-6)

    def test_zero_vector_stays_zero(self):
        short = truncate_embedding(np.zeros(4, dtype=np.float32), 2)
        self.assertEqual(short.tolist(), [0.0, 0.0])


if __name__ == "__main__":
    unittest.main()
