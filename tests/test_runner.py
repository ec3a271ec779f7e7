import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import numpy as np

from vaultgraph.errors import LLMError
from vaultgraph.graph import sqlite_graph as g
from vaultgraph.index.embedder import EmbeddingResult
from vaultgraph.ingest import pipeline
from vaultgraph.ingest.chunker import Chunk
from vaultgraph.ingest.pipeline import IngestServices, PipelineOptions
from vaultgraph.ingest.runner import Document, ingest_vault, iter_documents


class StubEmbedder:
    def embed_texts(self, texts):
        return EmbeddingResult(vectors=np.ones((len(texts), 3), dtype=np.float32))


def fake_chunk_text(text, **kwargs):
    if "boom" in text:
        raise LLMError("model unavailable")
    return iter([Chunk(content=text, position=0, heading_context=[])])


class TestIngestVault(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "vault.db")
        self.services = IngestServices(llm=object(), embedder=StubEmbedder())
        self.options = PipelineOptions(embed_batch_delay_s=0)

    def tearDown(self):
        self.tmp.cleanup()

    def run_vault(self, documents, **kwargs):
        with patch.object(pipeline, "chunk_text", side_effect=fake_chunk_text), patch.object(
            pipeline, "summarize_article", return_value="Summary"
        ):
            return ingest_vault(
                db_path=self.db_path,
                documents=documents,
                services=self.services,
                options=self.options,
                **kwargs,
            )

    def test_one_failure_does_not_stop_the_rest(self):
        docs = [
            Document(path="a.md", content="alpha"),
            Document(path="bad.md", content="boom"),
            Document(path="c.md", content="gamma"),
        ]
        errors = []
        progress = []

        result = self.run_vault(
            docs,
            concurrency=2,
            on_error=lambda path, e: errors.append((path, type(e).__name__)),
            on_progress=lambda done, total, active: progress.append((done, total, list(active))),
        )

        self.assertEqual(result.successful, 2)
        self.assertEqual(result.failed, 1)
        self.assertEqual(errors, [("bad.md", "LLMError")])
        self.assertEqual(max(p[0] for p in progress), 3)
        self.assertTrue(all(p[1] == 3 for p in progress))
        self.assertIn((3, 3, []), progress)

        conn = g.connect(self.db_path)
        try:
            self.assertEqual(g.count_rows(conn)["articles"], 2)
        finally:
            conn.close()

    def test_rerun_skips_unchanged_documents(self):
        docs = [Document(path="a.md", content="alpha"), Document(path="b.md", content="beta")]
        self.run_vault(docs)
        with patch.object(pipeline, "chunk_text", side_effect=AssertionError("should not chunk")):
            result = ingest_vault(db_path=self.db_path, documents=docs, services=self.services, options=self.options)
        self.assertEqual((result.successful, result.failed), (2, 0))

    def test_duplicate_paths_are_rejected(self):
        docs = [
            Document(path="a.md", content="x"),
            Document(path="b.md", content="y"),
            Document(path="a.md", content="z"),
            Document(path="b.md", content="w"),
        ]
        with self.assertRaisesRegex(ValueError, r"Duplicate document paths: a\.md, b\.md$"):
            self.run_vault(docs)
        self.assertFalse(os.path.exists(self.db_path))

    def test_concurrency_must_be_positive(self):
        with self.assertRaises(ValueError):
            self.run_vault([], concurrency=0)

    def test_empty_document_list(self):
        result = self.run_vault([])
        self.assertEqual((result.successful, result.failed), (0, 0))


class TestIterDocuments(unittest.TestCase):
    def test_markdown_only_and_hidden_dirs_skipped(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "sub").mkdir()
            (root / ".obsidian").mkdir()
            (root / "top.md").write_text("top", encoding="utf-8")
            (root / "sub" / "deep.markdown").write_text("deep", encoding="utf-8")
            (root / "sub" / "image.png").write_bytes(b"\x89PNG")
            (root / ".obsidian" / "config.md").write_text("hidden", encoding="utf-8")

            docs = list(iter_documents(root))

        self.assertEqual(sorted(d.path for d in docs), ["sub/deep.markdown", "top.md"])
        self.assertEqual({d.path: d.content for d in docs}["top.md"], "top")


if __name__ == "__main__":
    unittest.main()
