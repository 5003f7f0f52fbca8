"""Common utilities shared across services.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers and decorators.
- ``errors``: the search error taxonomy.
- ``db``: shared asyncpg pool used by the PostgreSQL adapters.

Import pattern:
- from libs.common.config import SearchConfig
- from libs.common.logging import configure_logging
"""
