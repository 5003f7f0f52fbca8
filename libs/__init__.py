"""Shared libraries for the knowledge-base search platform.

Subpackages:
- ``libs.common``: configuration, logging, metrics, errors, and the shared DB pool.
- ``libs.vector_store``: vector store abstractions and concrete backends.
- ``libs.lexical_store``: full-text index stores, tokenizers, and the query tree.
- ``libs.tag_store``: read-only tag forest access.
- ``libs.fragment_store``: read-only fragment repository.

Notes:
- Avoid service-specific logic; keep modules cohesive and broadly useful.
"""
