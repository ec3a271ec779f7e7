"""Destructive reimport without losing references that point in from outside.

A changed article is deleted and recreated with new ids. Project associations
and inbound backlinks that target it would dangle, so they are saved first,
staged durably in `reimport_staging`, and restored onto the new ids once the
new article exists. The steps are separate functions so the window between
`delete_subtree` and `restore_foreign_refs` stays visible.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any

from ..errors import PartialRestoreFailure
from ..graph import identity
from ..graph import sqlite_graph as g


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SavedAssociation:
    project_id: str
    association_type: str
    # Set when the association targeted one of the article's chunks.
    chunk_content_hash: str | None = None


@dataclass(frozen=True)
class SavedBacklink:
    source_id: str
    link_text: str
    context: str | None = None


@dataclass(frozen=True)
class ForeignRefs:
    old_article_id: str
    associations: list[SavedAssociation] = field(default_factory=list)
    backlinks: list[SavedBacklink] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.associations) + len(self.backlinks)

    def merged_with(self, other: ForeignRefs) -> ForeignRefs:
        assocs = list(self.associations)
        for a in other.associations:
            if a not in assocs:
                assocs.append(a)
        links = list(self.backlinks)
        for b in other.backlinks:
            if b not in links:
                links.append(b)
        return ForeignRefs(old_article_id=self.old_article_id, associations=assocs, backlinks=links)

    def to_payload(self) -> dict[str, Any]:
        return {
            "associations": [asdict(a) for a in self.associations],
            "backlinks": [asdict(b) for b in self.backlinks],
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ForeignRefs:
        return cls(
            old_article_id=str(payload["old_article_id"]),
            associations=[SavedAssociation(**a) for a in payload.get("associations", [])],
            backlinks=[SavedBacklink(**b) for b in payload.get("backlinks", [])],
        )


def save_foreign_refs(conn: sqlite3.Connection, article_id: str) -> ForeignRefs:
    """Read the associations and inbound backlinks that would dangle after deletion."""
    associations: list[SavedAssociation] = []
    for row in g.get_associations_for_article(conn, article_id):
        chunk_hash = None
        if row["target_id"] != article_id:
            chunk_hash = str(row["target_hash"])
        associations.append(
            SavedAssociation(
                project_id=str(row["project_id"]),
                association_type=str(row["association_type"]),
                chunk_content_hash=chunk_hash,
            )
        )

    backlinks: list[SavedBacklink] = []
    for row in g.get_inbound_backlinks(conn, article_id):
        # Self-links are rebuilt from the article text.
        if row["source_id"] == article_id:
            continue
        backlinks.append(
            SavedBacklink(
                source_id=str(row["source_id"]),
                link_text=str(row["link_text"]),
                context=row["context"],
            )
        )

    return ForeignRefs(old_article_id=article_id, associations=associations, backlinks=backlinks)


def stage_foreign_refs(conn: sqlite3.Connection, source_path: str, refs: ForeignRefs) -> None:
    """Persist `refs` and commit, so they outlive a crash after deletion."""
    g.save_staging(conn, source_path=source_path, old_article_id=refs.old_article_id, payload=refs.to_payload())
    conn.commit()


def load_staged_refs(conn: sqlite3.Connection, source_path: str) -> ForeignRefs | None:
    payload = g.load_staging(conn, source_path)
    if payload is None:
        return None
    return ForeignRefs.from_payload(payload)


def collect_subtree(conn: sqlite3.Connection, root_id: str) -> list[str]:
    """The root plus every descendant reachable via containment edges (breadth-first)."""
    ids = [root_id]
    seen = {root_id}
    queue = deque([root_id])
    while queue:
        parent_id = queue.popleft()
        for child_id in g.get_child_ids(conn, parent_id):
            if child_id in seen:
                continue
            seen.add(child_id)
            ids.append(child_id)
            queue.append(child_id)
    return ids


def delete_subtree(conn: sqlite3.Connection, node_ids: list[str]) -> None:
    """Delete in dependency order; each statement stands alone and is committed."""
    g.delete_keyword_occurrences(conn, node_ids)
    g.delete_containment_edges(conn, node_ids)
    g.delete_backlink_edges(conn, node_ids)
    g.delete_nodes(conn, node_ids)
    conn.commit()
    logger.info("Deleted %d nodes (article + descendants)", len(node_ids))


def restore_foreign_refs(
    conn: sqlite3.Connection,
    refs: ForeignRefs,
    *,
    new_article_id: str,
    source_path: str,
) -> int:
    """Reinsert saved refs against the new ids; return the number that failed.

    A failed restore is logged and skipped. The staging row is cleared at the
    end either way.
    """
    failures = 0

    for assoc in refs.associations:
        try:
            _restore_association(conn, assoc, new_article_id=new_article_id, source_path=source_path)
        except (PartialRestoreFailure, sqlite3.IntegrityError) as e:
            failures += 1
            logger.warning(
                "Could not restore association project=%s for %s: %s", assoc.project_id, source_path, e
            )

    for link in refs.backlinks:
        try:
            if not g.node_exists(conn, link.source_id):
                raise PartialRestoreFailure(f"backlink source {link.source_id} no longer exists")
            g.upsert_backlink_edge(
                conn,
                source_id=link.source_id,
                target_id=new_article_id,
                link_text=link.link_text,
                context=link.context,
            )
        except (PartialRestoreFailure, sqlite3.IntegrityError) as e:
            failures += 1
            logger.warning("Could not restore backlink %s -> %s: %s", link.source_id, source_path, e)

    g.clear_staging(conn, source_path)
    conn.commit()

    restored = len(refs) - failures
    if len(refs):
        logger.info("Restored %d/%d foreign refs for %s", restored, len(refs), source_path)
    return failures


def _restore_association(
    conn: sqlite3.Connection,
    assoc: SavedAssociation,
    *,
    new_article_id: str,
    source_path: str,
) -> None:
    if not g.node_exists(conn, assoc.project_id):
        raise PartialRestoreFailure(f"project {assoc.project_id} no longer exists")

    target_id = new_article_id
    if assoc.chunk_content_hash is not None:
        chunk = identity.find_existing(
            conn,
            "chunk",
            {"source_path": source_path, "content_hash": assoc.chunk_content_hash},
        )
        if chunk is None:
            raise PartialRestoreFailure(
                f"chunk {assoc.chunk_content_hash} is no longer part of the article"
            )
        target_id = str(chunk["id"])

    g.upsert_project_association(
        conn,
        project_id=assoc.project_id,
        target_id=target_id,
        association_type=assoc.association_type,
    )
