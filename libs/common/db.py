"""Shared PostgreSQL connection pool.

The PostgreSQL adapters (vector, lexical, tags, fragments, search logs) share
a single lazily created ``asyncpg`` pool. Queries are funneled through the
``execute``/``fetch`` helpers for uniform error handling: every driver failure
is wrapped in ``SearchBackendError`` tagged with the calling backend.
"""

from typing import Any, Iterable, List, Optional

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from .errors import SearchBackendError

logger = structlog.get_logger("common.db")


class PostgresPool:
    """Lazily created asyncpg pool with the pgvector codec registered."""

    def __init__(
        self,
        dsn: str,
        pool_size: int = 10,
        max_queries: int = 50000,
        command_timeout: int = 60,
    ):
        """Configure the pool.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - pool_size: Max size of asyncpg connection pool
        - max_queries: Queries per connection before recycling
        - command_timeout: Seconds to allow per DB command
        """
        self.dsn = dsn
        self.pool_size = pool_size
        self.max_queries = max_queries
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None

    async def _init_connection(self, conn: Connection) -> None:
        await register_vector(conn)

    async def get_pool(self, backend: str = "postgres") -> Pool:
        """Get or create the connection pool."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    max_queries=self.max_queries,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created PostgreSQL connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create PostgreSQL connection pool", error=str(e))
                raise SearchBackendError(
                    f"Failed to create connection pool: {e}", backend=backend
                ) from e

        return self._pool

    async def execute(self, query: str, *args: Any, backend: str = "postgres") -> str:
        pool = await self.get_pool(backend)
        try:
            async with pool.acquire() as conn:
                return await conn.execute(query, *args)
        except Exception as e:
            logger.error("Query execution failed", backend=backend, error=str(e))
            raise SearchBackendError(f"Query failed: {e}", backend=backend) from e

    async def fetch(self, query: str, *args: Any, backend: str = "postgres") -> List[asyncpg.Record]:
        pool = await self.get_pool(backend)
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except Exception as e:
            logger.error("Query execution failed", backend=backend, error=str(e))
            raise SearchBackendError(f"Query failed: {e}", backend=backend) from e

    async def fetchval(self, query: str, *args: Any, backend: str = "postgres") -> Any:
        pool = await self.get_pool(backend)
        try:
            async with pool.acquire() as conn:
                return await conn.fetchval(query, *args)
        except Exception as e:
            logger.error("Query execution failed", backend=backend, error=str(e))
            raise SearchBackendError(f"Query failed: {e}", backend=backend) from e

    async def health_check(self) -> bool:
        try:
            return await self.fetchval("SELECT 1") == 1
        except SearchBackendError:
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Closed PostgreSQL connection pool")


def to_vector_param(vector: Iterable[float]) -> np.ndarray:
    """Coerce a query vector to the float32 array the pgvector codec expects."""
    return np.asarray(list(vector), dtype=np.float32)
