from __future__ import annotations

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from ..graph import identity
from ..graph import sqlite_graph as g
from ..index.batching import BATCH_SIZE, RATE_LIMIT_DELAY_S, embed_batched
from ..index.embedder import truncate_embedding
from ..llm.client import OllamaChatClient
from ..llm.summarize import KeywordGroup, reduce_keywords_for_article, summarize_article
from . import markdown as md
from . import reimport
from .chunker import DEFAULT_WINDOW_SIZE, Chunk, chunk_text


logger = logging.getLogger(__name__)

PENDING_HASH_PREFIX = "pending:"

ProgressFn = Callable[[str, int, int], None]


@dataclass(frozen=True)
class IngestServices:
    llm: OllamaChatClient
    embedder: Any  # OllamaEmbeddingClient | Embedder


@dataclass(frozen=True)
class PipelineOptions:
    force_reimport: bool = False
    window_size: int = DEFAULT_WINDOW_SIZE
    embed_batch_size: int = BATCH_SIZE
    embed_batch_delay_s: float = RATE_LIMIT_DELAY_S
    keyword_dims: int = 256


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def determine_import_action(existing: Any, new_hash: str, force_reimport: bool = False) -> str:
    """Return "create", "skip" or "reimport".

    `existing` is the stored article (anything with a `content_hash` item) or None.
    """
    if existing is None:
        return "create"
    if force_reimport or existing["content_hash"] != new_hash:
        return "reimport"
    return "skip"


def ingest_article(
    *,
    conn: sqlite3.Connection,
    source_path: str,
    content: str,
    services: IngestServices,
    options: PipelineOptions | None = None,
    on_progress: ProgressFn | None = None,
) -> str:
    """Ingest one markdown document and return the article node id.

    Unchanged content returns the existing id without any LLM or embedding
    calls. Changed content (or `force_reimport`) deletes the old article and
    its chunks and recreates them under new ids, carrying project
    associations and inbound backlinks over to the new article.
    """
    options = options or PipelineOptions()
    filename = source_path.rsplit("/", 1)[-1]
    parsed = md.parse_markdown(content, filename)
    article_hash = content_hash(parsed.content)

    existing = identity.find_existing(conn, "article", {"source_path": source_path})
    action = determine_import_action(existing, article_hash, options.force_reimport)
    staged = reimport.load_staged_refs(conn, source_path)

    if action == "skip":
        article_id = str(existing["id"])
        logger.info('Skip: "%s" unchanged', parsed.title)
        if staged is not None:
            logger.warning("Restoring %d staged refs left by an interrupted reimport of %s", len(staged), source_path)
            reimport.restore_foreign_refs(conn, staged, new_article_id=article_id, source_path=source_path)
        if on_progress:
            on_progress(f"Article: {parsed.title} (existing)", 1, 1)
        return article_id

    refs: reimport.ForeignRefs | None = staged
    if action == "reimport":
        old_id = str(existing["id"])
        logger.info('Reimport: "%s" (old id %s)', parsed.title, old_id)
        saved = reimport.save_foreign_refs(conn, old_id)
        # A previous crash may already have deleted refs that are only in staging now.
        refs = staged.merged_with(saved) if staged is not None else saved
        reimport.stage_foreign_refs(conn, source_path, refs)
        reimport.delete_subtree(conn, reimport.collect_subtree(conn, old_id))
    elif staged is not None:
        logger.warning("Found %d staged refs from an interrupted reimport of %s", len(staged), source_path)

    try:
        article_id = _build_article(
            conn=conn,
            source_path=source_path,
            parsed=parsed,
            article_hash=article_hash,
            services=services,
            options=options,
            on_progress=on_progress,
        )
    except Exception:
        if refs is not None:
            logger.error(
                "reimport interrupted for %s: old article %s is deleted, %d refs remain staged for recovery",
                source_path,
                refs.old_article_id,
                len(refs),
            )
        raise

    if refs is not None:
        reimport.restore_foreign_refs(conn, refs, new_article_id=article_id, source_path=source_path)
    return article_id


def _build_article(
    *,
    conn: sqlite3.Connection,
    source_path: str,
    parsed: md.ParsedArticle,
    article_hash: str,
    services: IngestServices,
    options: PipelineOptions,
    on_progress: ProgressFn | None,
) -> str:
    logger.info('Chunking "%s"...', parsed.title)
    chunks: list[Chunk] = list(chunk_text(parsed.content, llm=services.llm, window_size=options.window_size))
    logger.info("Got %d chunks", len(chunks))

    summary = summarize_article(services.llm, parsed.title, parsed.content) or parsed.title

    unique_keywords: list[str] = []
    seen: set[str] = set()
    for chunk in chunks:
        for kw in chunk.keywords:
            if kw not in seen:
                seen.add(kw)
                unique_keywords.append(kw)

    # [0] article summary, [1..n] chunk contents, [n+1..] unique keywords
    texts = [summary, *(c.content for c in chunks), *unique_keywords]
    logger.info(
        "Embedding %d texts (1 article + %d chunks + %d keywords)", len(texts), len(chunks), len(unique_keywords)
    )
    embeddings = embed_batched(
        texts,
        embedder=services.embedder,
        batch_size=options.embed_batch_size,
        delay_s=options.embed_batch_delay_s,
        on_progress=lambda done, total: logger.debug("Embeddings %d/%d", done, total),
    )
    n = len(chunks)
    article_embedding = embeddings[0]
    chunk_embeddings = embeddings[1 : 1 + n]
    keyword_embeddings: dict[str, np.ndarray] = {
        kw: embeddings[1 + n + i] for i, kw in enumerate(unique_keywords)
    }

    total_work = 1 + n + 1
    completed = 0

    def report(item: str) -> None:
        nonlocal completed
        completed += 1
        if on_progress:
            on_progress(item, completed, total_work)

    # Marked pending until everything below is written; a half-built article
    # then reimports on the next run instead of being skipped.
    article_id = g.insert_node(
        conn,
        node_type="article",
        source_path=source_path,
        title=parsed.title,
        summary=summary,
        content_hash=PENDING_HASH_PREFIX + article_hash,
        embedding=article_embedding,
    )
    conn.commit()
    report(f"Article: {parsed.title}")

    for i, chunk in enumerate(chunks):
        chunk_id = g.insert_node(
            conn,
            node_type="chunk",
            source_path=source_path,
            content=chunk.content,
            content_hash=content_hash(chunk.content),
            embedding=chunk_embeddings[i],
            chunk_type=chunk.chunk_type,
            heading_context=chunk.heading_context,
        )
        g.upsert_containment_edge(conn, parent_id=article_id, child_id=chunk_id, position=chunk.position)
        for kw in chunk.keywords:
            _add_keyword(conn, kw, keyword_embeddings[kw], node_id=chunk_id, node_type="chunk", dims=options.keyword_dims)
        conn.commit()
        report(f"Chunk {i + 1}/{n}: {chunk.chunk_type or 'unlabeled'}")

    if unique_keywords:
        groups = [
            KeywordGroup(label=" > ".join(c.heading_context) or f"Chunk {i + 1}", keywords=list(c.keywords))
            for i, c in enumerate(chunks)
        ]
        article_keywords = reduce_keywords_for_article(services.llm, parsed.title, groups)
        for kw in article_keywords:
            emb = keyword_embeddings.get(kw)
            if emb is None:
                # Synthesized by the reduction, not seen in any chunk.
                emb = embed_batched([kw], embedder=services.embedder)[0]
                keyword_embeddings[kw] = emb
            _add_keyword(conn, kw, emb, node_id=article_id, node_type="article", dims=options.keyword_dims)
        conn.commit()
        logger.info("Bubbled %d keywords to article level", len(article_keywords))
    report("Keywords bubbled to article")

    resolved = 0
    for link in parsed.backlinks:
        target_id = g.find_article_by_link(conn, link.link_text)
        if target_id is None:
            continue
        g.upsert_backlink_edge(
            conn,
            source_id=article_id,
            target_id=target_id,
            link_text=link.link_text,
            context=link.context,
        )
        resolved += 1
    if parsed.backlinks:
        logger.debug("Resolved %d/%d backlinks for %s", resolved, len(parsed.backlinks), source_path)

    g.set_content_hash(conn, article_id, article_hash)
    conn.commit()
    return article_id


def _add_keyword(
    conn: sqlite3.Connection,
    keyword: str,
    embedding: np.ndarray,
    *,
    node_id: str,
    node_type: str,
    dims: int,
) -> None:
    keyword_id = g.upsert_keyword(
        conn,
        keyword=keyword,
        embedding=embedding,
        embedding_short=truncate_embedding(embedding, dims),
    )
    g.add_keyword_occurrence(conn, keyword_id=keyword_id, node_id=node_id, node_type=node_type)
