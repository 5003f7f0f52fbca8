"""In-memory tag store for local development and tests."""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

from .base import Tag, TagStore


class InMemoryTagStore(TagStore):
    """Tag forest and assignments held in dicts."""

    def __init__(self):
        self._tags: Dict[int, Tag] = {}
        self._children: Dict[int, Set[int]] = defaultdict(set)
        self._fragment_tags: Dict[int, Set[int]] = defaultdict(set)

    def add_tag(self, tag_id: int, name: str, parent_id: Optional[int] = None) -> Tag:
        tag = Tag(id=tag_id, name=name, parent_id=parent_id)
        self._tags[tag_id] = tag
        if parent_id is not None:
            self._children[parent_id].add(tag_id)
        return tag

    def assign(self, fragment_id: int, *tag_ids: int) -> None:
        self._fragment_tags[fragment_id].update(tag_ids)

    async def tags_of(self, fragment_id: int) -> Set[int]:
        return set(self._fragment_tags.get(fragment_id, ()))

    async def descendants_of(self, tag_id: int) -> Set[int]:
        descendants: Set[int] = set()
        pending: List[int] = [tag_id]
        while pending:
            for child in self._children.get(pending.pop(), ()):
                if child != tag_id and child not in descendants:
                    descendants.add(child)
                    pending.append(child)
        return descendants

    async def fragments_with_tags(self, tag_ids: Iterable[int]) -> Set[int]:
        wanted = set(tag_ids)
        return {
            fragment_id
            for fragment_id, assigned in self._fragment_tags.items()
            if assigned & wanted
        }

    async def names_of(self, tag_ids: Iterable[int]) -> Dict[int, str]:
        return {tag_id: self._tags[tag_id].name for tag_id in tag_ids if tag_id in self._tags}
