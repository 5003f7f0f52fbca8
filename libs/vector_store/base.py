"""Base vector store interface.

Defines the abstract contract the search service depends on, independent of
the backing implementation (pgvector, in-memory).

All methods are asynchronous to support high‑throughput services.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class VectorMatch:
    """One nearest-neighbour match: fragment id, cosine similarity, model."""
    fragment_id: int
    score: float
    model: Optional[str] = None


class VectorStore(ABC):
    """Abstract base class for vector stores.

    Implementations must return matches sorted by descending cosine
    similarity and must never return matches below ``min_score`` when one
    is given.
    """

    @abstractmethod
    async def nearest(
        self,
        vector: Sequence[float],
        k: int,
        min_score: Optional[float] = None
    ) -> List[VectorMatch]:
        """Return up to ``k`` nearest neighbours of ``vector``.

        Raises ``SearchBackendError`` when the store is unavailable.
        """
        pass

    @abstractmethod
    async def upsert(
        self,
        fragment_id: int,
        vector: Sequence[float],
        model: str = "default"
    ) -> None:
        """Store or replace the embedding of a fragment."""
        pass

    @abstractmethod
    async def delete(self, fragment_id: int) -> bool:
        """Delete a fragment's embeddings. Returns ``True`` if any were deleted."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the vector store is healthy."""
        pass
