"""In-memory fragment repository for local development and tests."""

from typing import Dict, Iterable, Set

from libs.common.models import Fragment

from .base import FragmentRepository


class InMemoryFragmentRepository(FragmentRepository):

    def __init__(self):
        self._fragments: Dict[int, Fragment] = {}

    def add(self, fragment: Fragment) -> Fragment:
        self._fragments[fragment.id] = fragment
        return fragment

    def remove(self, fragment_id: int) -> bool:
        return self._fragments.pop(fragment_id, None) is not None

    async def get_many(self, ids: Iterable[int]) -> Dict[int, Fragment]:
        return {i: self._fragments[i] for i in ids if i in self._fragments}

    async def exists_many(self, ids: Iterable[int]) -> Set[int]:
        return {i for i in ids if i in self._fragments}

    def __len__(self) -> int:
        return len(self._fragments)
