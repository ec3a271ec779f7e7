import unittest

from vaultgraph.graph import sqlite_graph as g
from vaultgraph.ingest import reimport


class TestReimportSteps(unittest.TestCase):
    def setUp(self):
        self.conn = g.connect(":memory:")
        g.init_db(self.conn)
        self.article = g.insert_node(self.conn, node_type="article", source_path="a.md", title="a", content_hash="h")
        self.chunks = []
        for i, text in enumerate(["one", "two"]):
            cid = g.insert_node(self.conn, node_type="chunk", source_path="a.md", content=text, content_hash=f"c{i}")
            g.upsert_containment_edge(self.conn, parent_id=self.article, child_id=cid, position=i)
            self.chunks.append(cid)
        self.other = g.insert_node(self.conn, node_type="article", source_path="b.md", title="b", content_hash="hb")
        self.project = g.insert_node(self.conn, node_type="project", title="P", content_hash="p")
        self.conn.commit()

    def tearDown(self):
        self.conn.close()

    def test_collect_subtree_is_breadth_first(self):
        grandchild = g.insert_node(self.conn, node_type="chunk", source_path="a.md", content="deep", content_hash="d")
        g.upsert_containment_edge(self.conn, parent_id=self.chunks[0], child_id=grandchild, position=0)
        ids = reimport.collect_subtree(self.conn, self.article)
        self.assertEqual(ids, [self.article, *self.chunks, grandchild])

    def test_save_refs_skips_self_links_and_records_chunk_hash(self):
        g.upsert_backlink_edge(self.conn, source_id=self.other, target_id=self.article, link_text="a", context="see [[a]]")
        g.upsert_backlink_edge(self.conn, source_id=self.article, target_id=self.article, link_text="a")
        g.upsert_project_association(
            self.conn, project_id=self.project, target_id=self.chunks[1], association_type="references"
        )

        refs = reimport.save_foreign_refs(self.conn, self.article)

        self.assertEqual(len(refs.backlinks), 1)
        self.assertEqual(refs.backlinks[0].source_id, self.other)
        self.assertEqual(len(refs.associations), 1)
        self.assertEqual(refs.associations[0].chunk_content_hash, "c1")

    def test_delete_subtree_removes_nodes_edges_and_keywords(self):
        kw = g.upsert_keyword(self.conn, keyword="k", embedding=[1.0, 0.0], embedding_short=[1.0])
        g.add_keyword_occurrence(self.conn, keyword_id=kw, node_id=self.chunks[0], node_type="chunk")
        g.upsert_backlink_edge(self.conn, source_id=self.other, target_id=self.article, link_text="a")

        reimport.delete_subtree(self.conn, reimport.collect_subtree(self.conn, self.article))

        counts = g.count_rows(self.conn)
        self.assertEqual(counts["chunks"], 0)
        self.assertEqual(counts["articles"], 1)
        self.assertEqual(counts["containment_edges"], 0)
        self.assertEqual(counts["backlink_edges"], 0)
        self.assertEqual(counts["keyword_occurrences"], 0)
        # Canonical keywords are shared and survive
        self.assertEqual(counts["keywords"], 1)

    def test_staged_refs_round_trip_and_restore_clears_staging(self):
        g.upsert_backlink_edge(self.conn, source_id=self.other, target_id=self.article, link_text="a")
        g.upsert_project_association(self.conn, project_id=self.project, target_id=self.article, association_type="contains")
        refs = reimport.save_foreign_refs(self.conn, self.article)
        reimport.stage_foreign_refs(self.conn, "a.md", refs)

        loaded = reimport.load_staged_refs(self.conn, "a.md")
        self.assertEqual(loaded, refs)

        reimport.delete_subtree(self.conn, reimport.collect_subtree(self.conn, self.article))
        new_id = g.insert_node(self.conn, node_type="article", source_path="a.md", title="a", content_hash="h2")

        failures = reimport.restore_foreign_refs(self.conn, loaded, new_article_id=new_id, source_path="a.md")

        self.assertEqual(failures, 0)
        self.assertEqual([r["source_id"] for r in g.get_inbound_backlinks(self.conn, new_id)], [self.other])
        self.assertEqual(len(g.get_associations_for_article(self.conn, new_id)), 1)
        self.assertIsNone(reimport.load_staged_refs(self.conn, "a.md"))

    def test_restore_skips_refs_whose_source_is_gone(self):
        refs = reimport.ForeignRefs(
            old_article_id=self.article,
            associations=[reimport.SavedAssociation(project_id=self.project, association_type="contains", chunk_content_hash="gone")],
            backlinks=[reimport.SavedBacklink(source_id="missing", link_text="a")],
        )
        failures = reimport.restore_foreign_refs(self.conn, refs, new_article_id=self.article, source_path="a.md")
        self.assertEqual(failures, 2)
        self.assertEqual(g.count_rows(self.conn)["project_associations"], 0)


if __name__ == "__main__":
    unittest.main()
