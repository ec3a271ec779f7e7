from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np


SCHEMA_VERSION = 1

NODE_TYPES = ("article", "chunk", "project")

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on old builds.
_IN_BATCH = 500


def connect(db_path: str | os.PathLike[str], *, check_same_thread: bool = True) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # Bulk import runs one connection per worker thread; wait for the writer lock.
    conn = sqlite3.connect(str(db_path), timeout=30.0, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS nodes (
          id TEXT PRIMARY KEY,
          node_type TEXT NOT NULL CHECK (node_type IN ('article', 'chunk', 'project')),
          source_path TEXT,
          title TEXT,
          content TEXT,
          summary TEXT,
          content_hash TEXT NOT NULL,
          embedding BLOB,
          chunk_type TEXT,
          heading_context TEXT,
          created_at REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_type_path ON nodes(node_type, source_path);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_type_title ON nodes(node_type, title);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS containment_edges (
          parent_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          child_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          position INTEGER NOT NULL,
          PRIMARY KEY (parent_id, child_id)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_containment_child ON containment_edges(child_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS backlink_edges (
          source_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          target_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          link_text TEXT NOT NULL,
          context TEXT,
          PRIMARY KEY (source_id, target_id)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_backlink_target ON backlink_edges(target_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS project_associations (
          project_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          target_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          association_type TEXT NOT NULL CHECK (association_type IN ('contains', 'references')),
          created_at REAL NOT NULL,
          PRIMARY KEY (project_id, target_id)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_assoc_target ON project_associations(target_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS keywords (
          id INTEGER PRIMARY KEY,
          keyword TEXT NOT NULL UNIQUE,
          embedding BLOB NOT NULL,
          embedding_short BLOB NOT NULL,
          created_at REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS keyword_occurrences (
          keyword_id INTEGER NOT NULL REFERENCES keywords(id) ON DELETE CASCADE,
          node_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          node_type TEXT NOT NULL,
          PRIMARY KEY (keyword_id, node_id)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_kwocc_node ON keyword_occurrences(node_id);")

    # Foreign refs saved ahead of a destructive reimport; cleared once restored.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reimport_staging (
          source_path TEXT PRIMARY KEY,
          old_article_id TEXT NOT NULL,
          payload_json TEXT NOT NULL,
          created_at REAL NOT NULL
        );
        """
    )

    conn.execute(
        "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def vector_to_blob(vec: Sequence[float] | np.ndarray | None) -> bytes | None:
    if vec is None:
        return None
    return np.asarray(vec, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32)


def _batched(ids: Sequence[str]) -> Iterable[list[str]]:
    ids = list(ids)
    for i in range(0, len(ids), _IN_BATCH):
        yield ids[i : i + _IN_BATCH]


def _placeholders(n: int) -> str:
    return ",".join(["?"] * n)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def insert_node(
    conn: sqlite3.Connection,
    *,
    node_type: str,
    content_hash: str,
    source_path: str | None = None,
    title: str | None = None,
    content: str | None = None,
    summary: str | None = None,
    embedding: Sequence[float] | np.ndarray | None = None,
    chunk_type: str | None = None,
    heading_context: list[str] | None = None,
) -> str:
    """Insert a node with a fresh id and return the id."""
    if node_type not in NODE_TYPES:
        raise ValueError(f"Unknown node type: {node_type!r}")

    node_id = uuid.uuid4().hex
    conn.execute(
        """
        INSERT INTO nodes(
          id, node_type, source_path, title, content, summary, content_hash,
          embedding, chunk_type, heading_context, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            node_id,
            node_type,
            source_path,
            title,
            content,
            summary,
            content_hash,
            vector_to_blob(embedding),
            chunk_type,
            json.dumps(heading_context, ensure_ascii=False) if heading_context else None,
            time.time(),
        ),
    )
    return node_id


def set_content_hash(conn: sqlite3.Connection, node_id: str, content_hash: str) -> None:
    conn.execute("UPDATE nodes SET content_hash = ? WHERE id = ?", (content_hash, node_id))


def get_node(conn: sqlite3.Connection, node_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()


def node_exists(conn: sqlite3.Connection, node_id: str) -> bool:
    return conn.execute("SELECT 1 FROM nodes WHERE id = ?", (node_id,)).fetchone() is not None


def iter_nodes(conn: sqlite3.Connection, node_type: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM nodes WHERE node_type = ? ORDER BY created_at ASC, rowid ASC",
        (node_type,),
    ).fetchall()


def get_chunks_for_article(conn: sqlite3.Connection, article_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT n.*, ce.position AS position
        FROM containment_edges ce
        JOIN nodes n ON n.id = ce.child_id
        WHERE ce.parent_id = ?
        ORDER BY ce.position ASC
        """,
        (article_id,),
    ).fetchall()


def get_child_ids(conn: sqlite3.Connection, parent_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT child_id FROM containment_edges WHERE parent_id = ? ORDER BY position ASC",
        (parent_id,),
    ).fetchall()
    return [str(r["child_id"]) for r in rows]


def find_article_by_link(conn: sqlite3.Connection, link_text: str) -> str | None:
    """Resolve a [[link]] to the oldest article whose path ends with `<link>.md`."""
    suffix = f"{link_text}.md".lower()
    escaped = suffix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    row = conn.execute(
        """
        SELECT id FROM nodes
        WHERE node_type = 'article' AND lower(source_path) LIKE ? ESCAPE '\\'
        ORDER BY created_at ASC, rowid ASC
        LIMIT 1
        """,
        ("%" + escaped,),
    ).fetchone()
    return str(row["id"]) if row is not None else None


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


def upsert_containment_edge(conn: sqlite3.Connection, *, parent_id: str, child_id: str, position: int) -> None:
    conn.execute(
        """
        INSERT INTO containment_edges(parent_id, child_id, position)
        VALUES (?, ?, ?)
        ON CONFLICT(parent_id, child_id) DO UPDATE SET position = excluded.position
        """,
        (parent_id, child_id, int(position)),
    )


def upsert_backlink_edge(
    conn: sqlite3.Connection,
    *,
    source_id: str,
    target_id: str,
    link_text: str,
    context: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO backlink_edges(source_id, target_id, link_text, context)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(source_id, target_id) DO UPDATE SET
          link_text = excluded.link_text,
          context = excluded.context
        """,
        (source_id, target_id, link_text, context),
    )


def get_inbound_backlinks(conn: sqlite3.Connection, target_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT source_id, target_id, link_text, context FROM backlink_edges WHERE target_id = ?",
        (target_id,),
    ).fetchall()


def upsert_project_association(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    target_id: str,
    association_type: str,
) -> None:
    conn.execute(
        """
        INSERT INTO project_associations(project_id, target_id, association_type, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(project_id, target_id) DO UPDATE SET association_type = excluded.association_type
        """,
        (project_id, target_id, association_type, time.time()),
    )


def get_associations_for_article(conn: sqlite3.Connection, article_id: str) -> list[sqlite3.Row]:
    """Associations pointing at the article or one of its direct children."""
    return conn.execute(
        """
        SELECT pa.project_id, pa.target_id, pa.association_type,
               n.node_type AS target_type, n.content_hash AS target_hash
        FROM project_associations pa
        JOIN nodes n ON n.id = pa.target_id
        WHERE pa.target_id = ?
           OR pa.target_id IN (SELECT child_id FROM containment_edges WHERE parent_id = ?)
        """,
        (article_id, article_id),
    ).fetchall()


# ---------------------------------------------------------------------------
# Keywords
# ---------------------------------------------------------------------------


def upsert_keyword(
    conn: sqlite3.Connection,
    *,
    keyword: str,
    embedding: Sequence[float] | np.ndarray,
    embedding_short: Sequence[float] | np.ndarray,
) -> int:
    """Return the canonical keyword id; the first embedding stored wins."""
    row = conn.execute("SELECT id FROM keywords WHERE keyword = ?", (keyword,)).fetchone()
    if row is not None:
        return int(row["id"])

    conn.execute(
        """
        INSERT INTO keywords(keyword, embedding, embedding_short, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(keyword) DO NOTHING
        """,
        (keyword, vector_to_blob(embedding), vector_to_blob(embedding_short), time.time()),
    )
    # Another worker may have won the insert race; read back either way.
    row = conn.execute("SELECT id FROM keywords WHERE keyword = ?", (keyword,)).fetchone()
    return int(row["id"])


def add_keyword_occurrence(conn: sqlite3.Connection, *, keyword_id: int, node_id: str, node_type: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO keyword_occurrences(keyword_id, node_id, node_type) VALUES (?, ?, ?)",
        (int(keyword_id), node_id, node_type),
    )


def get_keywords_for_node(conn: sqlite3.Connection, node_id: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT k.keyword FROM keyword_occurrences ko
        JOIN keywords k ON k.id = ko.keyword_id
        WHERE ko.node_id = ?
        ORDER BY k.keyword
        """,
        (node_id,),
    ).fetchall()
    return [str(r["keyword"]) for r in rows]


# ---------------------------------------------------------------------------
# Bulk deletes
# ---------------------------------------------------------------------------


def delete_keyword_occurrences(conn: sqlite3.Connection, node_ids: Sequence[str]) -> None:
    for batch in _batched(node_ids):
        conn.execute(f"DELETE FROM keyword_occurrences WHERE node_id IN ({_placeholders(len(batch))})", batch)


def delete_containment_edges(conn: sqlite3.Connection, node_ids: Sequence[str]) -> None:
    for batch in _batched(node_ids):
        ph = _placeholders(len(batch))
        conn.execute(f"DELETE FROM containment_edges WHERE parent_id IN ({ph})", batch)
        conn.execute(f"DELETE FROM containment_edges WHERE child_id IN ({ph})", batch)


def delete_backlink_edges(conn: sqlite3.Connection, node_ids: Sequence[str]) -> None:
    for batch in _batched(node_ids):
        ph = _placeholders(len(batch))
        conn.execute(f"DELETE FROM backlink_edges WHERE source_id IN ({ph})", batch)
        conn.execute(f"DELETE FROM backlink_edges WHERE target_id IN ({ph})", batch)


def delete_nodes(conn: sqlite3.Connection, node_ids: Sequence[str]) -> None:
    for batch in _batched(node_ids):
        conn.execute(f"DELETE FROM nodes WHERE id IN ({_placeholders(len(batch))})", batch)


# ---------------------------------------------------------------------------
# Reimport staging
# ---------------------------------------------------------------------------


def save_staging(conn: sqlite3.Connection, *, source_path: str, old_article_id: str, payload: dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO reimport_staging(source_path, old_article_id, payload_json, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(source_path) DO UPDATE SET
          old_article_id = excluded.old_article_id,
          payload_json = excluded.payload_json
        """,
        (source_path, old_article_id, json.dumps(payload, ensure_ascii=False), time.time()),
    )


def load_staging(conn: sqlite3.Connection, source_path: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT old_article_id, payload_json FROM reimport_staging WHERE source_path = ?",
        (source_path,),
    ).fetchone()
    if row is None:
        return None
    payload = json.loads(row["payload_json"])
    payload["old_article_id"] = str(row["old_article_id"])
    return payload


def clear_staging(conn: sqlite3.Connection, source_path: str) -> None:
    conn.execute("DELETE FROM reimport_staging WHERE source_path = ?", (source_path,))


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def count_rows(conn: sqlite3.Connection) -> dict[str, int]:
    out: dict[str, int] = {}
    for t in NODE_TYPES:
        out[f"{t}s"] = int(
            conn.execute("SELECT COUNT(*) AS n FROM nodes WHERE node_type = ?", (t,)).fetchone()["n"]
        )
    for table in (
        "containment_edges",
        "backlink_edges",
        "project_associations",
        "keywords",
        "keyword_occurrences",
        "reimport_staging",
    ):
        out[table] = int(conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"])
    return out
