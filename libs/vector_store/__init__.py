"""Vector store adapters.

Primary components:
- ``base``: abstract ``VectorStore`` interface and the ``VectorMatch`` record.
- ``pgvector``: PostgreSQL/pgvector implementation of the interface.
- ``memory``: numpy brute-force implementation for development and tests.

Guidance:
- Construct stores through ``service_search.app.bootstrap`` so runtime
  services remain decoupled from specific backends.
"""
