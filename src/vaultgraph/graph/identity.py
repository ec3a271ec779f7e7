"""Node identity: which fields make two nodes "the same" logical entity.

`NODE_IDENTITY_KEYS` is consulted both by ingestion (create vs. skip vs.
reimport) and by the standalone dedupe pass.
"""

from __future__ import annotations

import sqlite3
from collections import defaultdict
from typing import Any, Iterable, Mapping

from ..errors import MissingIdentityKey


NODE_IDENTITY_KEYS: dict[str, tuple[str, ...]] = {
    "article": ("source_path",),
    # Content-based identity within an article
    "chunk": ("source_path", "content_hash"),
    "project": ("title",),
}


def identity_keys_for(node_type: str) -> tuple[str, ...]:
    try:
        return NODE_IDENTITY_KEYS[node_type]
    except KeyError:
        raise ValueError(f"Unknown node type: {node_type!r}") from None


def find_existing(
    conn: sqlite3.Connection,
    node_type: str,
    values: Mapping[str, Any],
) -> sqlite3.Row | None:
    """Return the oldest node matching the identity values, or None."""
    keys = identity_keys_for(node_type)

    clauses = ["node_type = ?"]
    params: list[Any] = [node_type]
    for key in keys:
        value = values.get(key)
        if value is None:
            raise MissingIdentityKey(node_type, key)
        clauses.append(f"{key} = ?")
        params.append(value)

    return conn.execute(
        f"SELECT * FROM nodes WHERE {' AND '.join(clauses)} ORDER BY created_at ASC, rowid ASC LIMIT 1",
        params,
    ).fetchone()


def identity_key(node: Mapping[str, Any]) -> str:
    keys = identity_keys_for(node["node_type"])
    return "::".join("" if node[k] is None else str(node[k]) for k in keys)


def group_by_identity(nodes: Iterable[Mapping[str, Any]]) -> dict[str, list[Any]]:
    """Group nodes by identity key, each group sorted oldest first."""
    groups: dict[str, list[Any]] = defaultdict(list)
    for node in nodes:
        groups[identity_key(node)].append(node)

    # sorted() is stable, so equal timestamps keep input order.
    return {k: sorted(v, key=lambda n: n["created_at"] or 0) for k, v in groups.items()}
