"""PgVector implementation of the vector store.

Vectors live in the ``embeddings`` table (one row per fragment and model,
keyed by ``source_id``). Cosine distance is computed with the ``<=>``
operator and converted to a ``similarity = 1 - distance`` score so that
thresholds mean the same thing across backends.
"""

from typing import List, Optional, Sequence

import structlog

from libs.common.db import PostgresPool, to_vector_param
from libs.common.errors import ValidationError

from .base import VectorMatch, VectorStore

logger = structlog.get_logger("vector_store.pgvector")


class PgVectorStore(VectorStore):
    """PgVector implementation of vector store."""

    def __init__(self, pool: PostgresPool, vector_dimension: Optional[int] = None):
        """Configure a PgVector-backed vector store.

        Parameters
        - pool: Shared ``PostgresPool``
        - vector_dimension: Expected dimensionality for stored vectors
        """
        self.pool = pool
        self.vector_dimension = vector_dimension

    def _ensure_vector_dimension(self, vector: Sequence[float]):
        array = to_vector_param(vector)
        if self.vector_dimension and array.shape[0] != self.vector_dimension:
            raise ValidationError(
                "Vector dimension mismatch",
                context={"expected": self.vector_dimension, "actual": int(array.shape[0])},
            )
        return array

    async def nearest(
        self,
        vector: Sequence[float],
        k: int,
        min_score: Optional[float] = None
    ) -> List[VectorMatch]:
        """Search for the nearest embeddings by cosine distance."""
        vector_array = self._ensure_vector_dimension(vector)

        if min_score is None:
            query = """
                SELECT source_id, model, 1 - (vector <=> $1) AS similarity
                FROM embeddings
                ORDER BY vector <=> $1
                LIMIT $2
            """
            rows = await self.pool.fetch(query, vector_array, k, backend="pgvector")
        else:
            query = """
                SELECT source_id, model, 1 - (vector <=> $1) AS similarity
                FROM embeddings
                WHERE (vector <=> $1) <= $3
                ORDER BY vector <=> $1
                LIMIT $2
            """
            rows = await self.pool.fetch(
                query, vector_array, k, 1.0 - min_score, backend="pgvector"
            )

        matches = [
            VectorMatch(
                fragment_id=row["source_id"],
                score=float(row["similarity"]),
                model=row["model"],
            )
            for row in rows
        ]

        logger.debug(
            "PgVector nearest search completed",
            results_count=len(matches),
            k=k,
            min_score=min_score
        )
        return matches

    async def upsert(
        self,
        fragment_id: int,
        vector: Sequence[float],
        model: str = "default"
    ) -> None:
        vector_array = self._ensure_vector_dimension(vector)
        query = """
            INSERT INTO embeddings (source_id, vector, model)
            VALUES ($1, $2, $3)
            ON CONFLICT (source_id, model)
            DO UPDATE SET
                vector = EXCLUDED.vector,
                updated_at = CURRENT_TIMESTAMP
        """
        await self.pool.execute(query, fragment_id, vector_array, model, backend="pgvector")
        logger.info("Stored embedding", fragment_id=fragment_id, model=model)

    async def delete(self, fragment_id: int) -> bool:
        result = await self.pool.execute(
            "DELETE FROM embeddings WHERE source_id = $1", fragment_id, backend="pgvector"
        )
        deleted = result.split()[-1] != "0"
        logger.info("Deleted embedding", fragment_id=fragment_id, deleted=deleted)
        return deleted

    async def health_check(self) -> bool:
        return await self.pool.health_check()
