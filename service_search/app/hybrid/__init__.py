"""Hybrid search components for semantic + lexical ranking.

Includes the ``HybridSearchManager`` which runs vector similarity (semantic)
and full-text search (lexical) concurrently and merges their results.
"""
