from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ..ingest.reimport import collect_subtree, delete_subtree
from . import sqlite_graph as g
from .identity import group_by_identity, identity_keys_for


logger = logging.getLogger(__name__)

# Leaves before parents, so deleting a duplicate article never races its chunks.
DEDUPE_ORDER = ("chunk", "article", "project")


def dedupe_node_type(conn: sqlite3.Connection, node_type: str, *, dry_run: bool = False) -> dict[str, Any]:
    """Keep the oldest node of each identity group and delete the rest."""
    keys = identity_keys_for(node_type)
    logger.info("Deduplicating %ss (identity: %s)", node_type, ", ".join(keys))

    groups = group_by_identity(g.iter_nodes(conn, node_type))
    kept = 0
    deleted = 0
    for key, group in groups.items():
        kept += 1
        duplicates = group[1:]
        if not duplicates:
            continue

        logger.info("%s %r: keeping %s, removing %d duplicate(s)", node_type, key, group[0]["id"], len(duplicates))
        if dry_run:
            deleted += len(duplicates)
            continue

        for dup in duplicates:
            # The duplicate may already be gone as part of an earlier subtree.
            if not g.node_exists(conn, str(dup["id"])):
                continue
            delete_subtree(conn, collect_subtree(conn, str(dup["id"])))
            deleted += 1

    return {"node_type": node_type, "kept": kept, "deleted": deleted}


def dedupe_all(conn: sqlite3.Connection, *, dry_run: bool = False) -> list[dict[str, Any]]:
    return [dedupe_node_type(conn, t, dry_run=dry_run) for t in DEDUPE_ORDER]
