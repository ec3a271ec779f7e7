"""Markdown vault -> SQLite knowledge graph (chunks, embeddings, keywords, backlinks)."""

__version__ = "0.1.0"
