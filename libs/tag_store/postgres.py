"""PostgreSQL tag store over the ``tags`` and ``section_tags`` tables."""

from collections import defaultdict
from typing import Dict, Iterable, Set

import structlog

from libs.common.db import PostgresPool

from .base import TagStore

logger = structlog.get_logger("tag_store.postgres")

BACKEND = "tags"


class PostgresTagStore(TagStore):
    """Tag lookups against the shared PostgreSQL pool."""

    def __init__(self, pool: PostgresPool):
        self.pool = pool

    async def tags_of(self, fragment_id: int) -> Set[int]:
        rows = await self.pool.fetch(
            "SELECT tag_id FROM section_tags WHERE section_id = $1",
            fragment_id,
            backend=BACKEND,
        )
        return {row["tag_id"] for row in rows}

    async def tags_of_many(self, fragment_ids: Iterable[int]) -> Dict[int, Set[int]]:
        ids = list(fragment_ids)
        result: Dict[int, Set[int]] = defaultdict(set)
        if ids:
            rows = await self.pool.fetch(
                "SELECT section_id, tag_id FROM section_tags WHERE section_id = ANY($1::bigint[])",
                ids,
                backend=BACKEND,
            )
            for row in rows:
                result[row["section_id"]].add(row["tag_id"])
        return {fragment_id: set(result.get(fragment_id, ())) for fragment_id in ids}

    async def descendants_of(self, tag_id: int) -> Set[int]:
        # UNION (not UNION ALL) stops the recursion on malformed cyclic data
        query = """
            WITH RECURSIVE descendants(id) AS (
                SELECT id FROM tags WHERE parent_id = $1
                UNION
                SELECT t.id FROM tags t JOIN descendants d ON t.parent_id = d.id
            )
            SELECT id FROM descendants
        """
        rows = await self.pool.fetch(query, tag_id, backend=BACKEND)
        return {row["id"] for row in rows if row["id"] != tag_id}

    async def fragments_with_tags(self, tag_ids: Iterable[int]) -> Set[int]:
        ids = list(tag_ids)
        if not ids:
            return set()
        rows = await self.pool.fetch(
            "SELECT DISTINCT section_id FROM section_tags WHERE tag_id = ANY($1::bigint[])",
            ids,
            backend=BACKEND,
        )
        return {row["section_id"] for row in rows}

    async def names_of(self, tag_ids: Iterable[int]) -> Dict[int, str]:
        ids = list(tag_ids)
        if not ids:
            return {}
        rows = await self.pool.fetch(
            "SELECT id, name FROM tags WHERE id = ANY($1::bigint[])", ids, backend=BACKEND
        )
        return {row["id"]: row["name"] for row in rows}

    async def health_check(self) -> bool:
        return await self.pool.health_check()
