"""Error taxonomy for the search platform.

Every error carries a ``context`` dict so handlers can log structured detail
without parsing messages.

Hierarchy
- ``SearchError`` (base)
  - ``ValidationError``: bad input (empty/oversized query, malformed vector).
    Never retried.
  - ``SearchBackendError``: a store is unreachable or a query failed. The
    orchestrator degrades the affected source to empty results.
  - ``EmbeddingError``: the embedding provider failed after retries.
  - ``TotalFailureError``: every requested source failed.
"""

from typing import Any, Dict, Optional


class SearchError(Exception):
    """Base exception for search operations."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(SearchError):
    """Invalid query, vector, or option."""
    pass


class SearchBackendError(SearchError):
    """Lexical, vector, tag, or fragment store failure."""

    def __init__(
        self,
        message: str,
        backend: str = "unknown",
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.backend = backend


class EmbeddingError(SearchError):
    """Embedding provider failed after all retry attempts."""
    pass


class TotalFailureError(SearchError):
    """All requested search sources failed."""

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, str]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.errors = errors or {}
