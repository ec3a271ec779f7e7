from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from ..graph import sqlite_graph as g
from .pipeline import IngestServices, PipelineOptions, ingest_article


logger = logging.getLogger(__name__)

SUPPORTED_TEXT_EXTS = {".md", ".markdown"}
DEFAULT_CONCURRENCY = 10


@dataclass(frozen=True)
class Document:
    path: str  # vault-relative, forward slashes
    content: str


@dataclass(frozen=True)
class BulkResult:
    successful: int
    failed: int


def iter_files(root: Path) -> Iterable[Path]:
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        if any(part.startswith(".") for part in p.relative_to(root).parts):
            continue
        yield p


def iter_documents(vault_dir: Path) -> Iterable[Document]:
    for path in iter_files(vault_dir):
        if path.suffix.lower() not in SUPPORTED_TEXT_EXTS:
            continue
        yield Document(
            path=path.relative_to(vault_dir).as_posix(),
            content=path.read_text(encoding="utf-8", errors="replace"),
        )


def ingest_vault(
    *,
    db_path: str,
    documents: list[Document],
    services: IngestServices,
    options: PipelineOptions | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    on_progress: Callable[[int, int, list[str]], None] | None = None,
    on_error: Callable[[str, Exception], None] | None = None,
) -> BulkResult:
    """Ingest many documents with at most `concurrency` in flight.

    Each worker thread opens its own connection. One document failing does
    not stop the others. Paths must be unique: two workers reimporting the
    same path would interleave their deletes and inserts.
    """
    if concurrency <= 0:
        raise ValueError("concurrency must be positive")

    dupes = sorted(p for p, n in Counter(d.path for d in documents).items() if n > 1)
    if dupes:
        raise ValueError(f"Duplicate document paths: {', '.join(dupes)}")

    conn = g.connect(db_path)
    try:
        g.init_db(conn)
    finally:
        conn.close()

    total = len(documents)
    lock = threading.Lock()
    local = threading.local()
    active: set[str] = set()
    connections = []
    completed = 0
    successful = 0
    failed = 0

    def report() -> None:
        if on_progress is None:
            return
        with lock:
            snapshot = (completed, sorted(active))
        on_progress(snapshot[0], total, snapshot[1])

    def worker_conn():
        conn = getattr(local, "conn", None)
        if conn is None:
            # check_same_thread=False only so the main thread can close it afterwards.
            conn = g.connect(db_path, check_same_thread=False)
            local.conn = conn
            with lock:
                connections.append(conn)
        return conn

    def run(doc: Document) -> None:
        nonlocal completed, successful, failed
        with lock:
            active.add(doc.path)
        report()
        conn = None
        try:
            conn = worker_conn()
            ingest_article(
                conn=conn,
                source_path=doc.path,
                content=doc.content,
                services=services,
                options=options,
            )
            with lock:
                successful += 1
        except Exception as e:
            logger.error("Import failed for %s: %s", doc.path, e)
            if conn is not None:
                # Release the write lock held by any uncommitted step.
                conn.rollback()
            with lock:
                failed += 1
            if on_error is not None:
                on_error(doc.path, e)
        finally:
            with lock:
                active.discard(doc.path)
                completed += 1
            report()

    try:
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="ingest") as executor:
            list(executor.map(run, documents))
    finally:
        for c in connections:
            c.close()

    logger.info("Bulk import done: %d ok, %d failed of %d", successful, failed, total)
    return BulkResult(successful=successful, failed=failed)
