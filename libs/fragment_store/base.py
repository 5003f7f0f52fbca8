"""Base fragment repository interface."""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Set

from libs.common.models import Fragment


class FragmentRepository(ABC):
    """Resolves fragment ids to fragments. Unknown ids are silently absent."""

    @abstractmethod
    async def get_many(self, ids: Iterable[int]) -> Dict[int, Fragment]:
        pass

    @abstractmethod
    async def exists_many(self, ids: Iterable[int]) -> Set[int]:
        """Return the subset of ``ids`` that still exist."""
        pass

    async def health_check(self) -> bool:
        return True
