import unittest

from vaultgraph.errors import MissingIdentityKey
from vaultgraph.graph import identity
from vaultgraph.graph import sqlite_graph as g


class TestIdentity(unittest.TestCase):
    def setUp(self):
        self.conn = g.connect(":memory:")
        g.init_db(self.conn)

    def tearDown(self):
        self.conn.close()

    def test_identity_keys(self):
        self.assertEqual(identity.identity_keys_for("article"), ("source_path",))
        self.assertEqual(identity.identity_keys_for("chunk"), ("source_path", "content_hash"))
        self.assertEqual(identity.identity_keys_for("project"), ("title",))
        with self.assertRaises(ValueError):
            identity.identity_keys_for("folder")

    def test_find_existing_requires_every_key(self):
        with self.assertRaises(MissingIdentityKey) as ctx:
            identity.find_existing(self.conn, "chunk", {"source_path": "a.md"})
        self.assertEqual(ctx.exception.key, "content_hash")

        with self.assertRaises(MissingIdentityKey):
            identity.find_existing(self.conn, "article", {"source_path": None})

    def test_find_existing_returns_oldest_match(self):
        first = g.insert_node(self.conn, node_type="article", source_path="a.md", title="a", content_hash="h1")
        g.insert_node(self.conn, node_type="article", source_path="a.md", title="a", content_hash="h2")
        g.insert_node(self.conn, node_type="article", source_path="b.md", title="b", content_hash="h3")

        row = identity.find_existing(self.conn, "article", {"source_path": "a.md"})
        self.assertEqual(row["id"], first)
        self.assertIsNone(identity.find_existing(self.conn, "article", {"source_path": "c.md"}))

    def test_chunk_identity_is_scoped_to_source_path(self):
        g.insert_node(self.conn, node_type="chunk", source_path="a.md", content="x", content_hash="same")
        self.assertIsNone(
            identity.find_existing(self.conn, "chunk", {"source_path": "b.md", "content_hash": "same"})
        )

    def test_group_by_identity_sorts_oldest_first(self):
        nodes = [
            {"id": "n2", "node_type": "article", "source_path": "a.md", "created_at": 2.0},
            {"id": "n3", "node_type": "article", "source_path": "b.md", "created_at": 3.0},
            {"id": "n1", "node_type": "article", "source_path": "a.md", "created_at": 1.0},
        ]
        groups = identity.group_by_identity(nodes)
        self.assertEqual(set(groups), {"a.md", "b.md"})
        self.assertEqual([n["id"] for n in groups["a.md"]], ["n1", "n2"])

    def test_identity_key_joins_fields(self):
        node = {"node_type": "chunk", "source_path": "a.md", "content_hash": "abc"}
        self.assertEqual(identity.identity_key(node), "a.md::abc")


if __name__ == "__main__":
    unittest.main()
