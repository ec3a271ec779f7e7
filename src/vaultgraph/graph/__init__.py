"""Graph storage: SQLite schema, node identity and dedupe.

Nodes are articles, chunks and projects; edges are containment (article ->
chunk), backlinks (article -> article) and project associations. Keywords are
canonical rows linked to nodes through occurrences.
"""
