"""API subpackage for the search service.

Routers expose endpoints for hybrid search, (de)indexing, and index stats.
Transport layer remains thin and delegates to ``HybridSearchManager``.
"""
