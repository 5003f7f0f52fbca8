"""Search ranking and result fusion components.

This package combines lexical and semantic signals: fusion strategies (RRF,
weighted score) with document-level deduplication, and the secondary
token-overlap rerank.

Contents
- ``fusion``: rank fusion utilities
- ``rerank``: token-overlap reranker
"""
