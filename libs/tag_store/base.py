"""Base tag store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set


@dataclass(frozen=True)
class Tag:
    id: int
    name: str
    parent_id: Optional[int] = None


class TagStore(ABC):
    """Read-only access to the tag forest and fragment/tag assignments."""

    @abstractmethod
    async def tags_of(self, fragment_id: int) -> Set[int]:
        """Return the ids of tags directly assigned to a fragment."""
        pass

    async def tags_of_many(self, fragment_ids: Iterable[int]) -> Dict[int, Set[int]]:
        """Batch variant of ``tags_of``; every requested id gets an entry."""
        return {fragment_id: await self.tags_of(fragment_id) for fragment_id in fragment_ids}

    @abstractmethod
    async def descendants_of(self, tag_id: int) -> Set[int]:
        """Return all transitive children of a tag, excluding the tag itself."""
        pass

    @abstractmethod
    async def fragments_with_tags(self, tag_ids: Iterable[int]) -> Set[int]:
        """Return ids of fragments carrying at least one of ``tag_ids``."""
        pass

    @abstractmethod
    async def names_of(self, tag_ids: Iterable[int]) -> Dict[int, str]:
        pass

    async def health_check(self) -> bool:
        return True
