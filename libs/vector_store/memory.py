"""In-memory vector store.

Brute-force cosine similarity with numpy. Used for local development and
tests; the ordering and threshold semantics match ``PgVectorStore``.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from libs.common.errors import ValidationError

from .base import VectorMatch, VectorStore

logger = structlog.get_logger("vector_store.memory")


class InMemoryVectorStore(VectorStore):
    """Vector store backed by a dict of numpy arrays."""

    def __init__(self, vector_dimension: Optional[int] = None):
        self.vector_dimension = vector_dimension
        self._vectors: Dict[int, Tuple[np.ndarray, str]] = {}

    def _as_array(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(list(vector), dtype=np.float64)
        if self.vector_dimension and array.shape[0] != self.vector_dimension:
            raise ValidationError(
                "Vector dimension mismatch",
                context={"expected": self.vector_dimension, "actual": int(array.shape[0])},
            )
        return array

    @staticmethod
    def _cosine(a: np.ndarray, b: np.ndarray) -> float:
        norm = np.linalg.norm(a) * np.linalg.norm(b)
        if norm == 0:
            return 0.0
        return float(np.dot(a, b) / norm)

    async def nearest(
        self,
        vector: Sequence[float],
        k: int,
        min_score: Optional[float] = None
    ) -> List[VectorMatch]:
        query = self._as_array(vector)
        scored = []
        for fragment_id, (stored, model) in self._vectors.items():
            if stored.shape != query.shape:
                continue
            similarity = self._cosine(query, stored)
            if min_score is not None and similarity < min_score:
                continue
            scored.append(VectorMatch(fragment_id=fragment_id, score=similarity, model=model))

        scored.sort(key=lambda m: (-m.score, m.fragment_id))
        return scored[:k]

    async def upsert(
        self,
        fragment_id: int,
        vector: Sequence[float],
        model: str = "default"
    ) -> None:
        self._vectors[fragment_id] = (self._as_array(vector), model)

    async def delete(self, fragment_id: int) -> bool:
        return self._vectors.pop(fragment_id, None) is not None

    async def health_check(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._vectors)
