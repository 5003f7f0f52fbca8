"""PostgreSQL fragment repository over ``source_sections``/``source_documents``."""

import json
from typing import Dict, Iterable, Set

import structlog

from libs.common.db import PostgresPool
from libs.common.models import Fragment

from .base import FragmentRepository

logger = structlog.get_logger("fragment_store.postgres")

BACKEND = "fragments"


class PostgresFragmentRepository(FragmentRepository):
    """Reads sections joined with their parent document."""

    def __init__(self, pool: PostgresPool):
        self.pool = pool

    async def get_many(self, ids: Iterable[int]) -> Dict[int, Fragment]:
        ids = list(ids)
        if not ids:
            return {}

        query = """
            SELECT s.id, s.document_id, s.section_title, s.content, s.section_number,
                   s.created_at, d.title AS document_title, d.metadata,
                   COALESCE(d.language, 'en') AS language
            FROM source_sections s
            JOIN source_documents d ON d.id = s.document_id
            WHERE s.id = ANY($1::bigint[])
        """
        rows = await self.pool.fetch(query, ids, backend=BACKEND)

        fragments = {}
        for row in rows:
            metadata = row["metadata"]
            if isinstance(metadata, str):
                metadata = json.loads(metadata)
            fragments[row["id"]] = Fragment(
                id=row["id"],
                document_id=row["document_id"],
                content=row["content"] or "",
                title=row["section_title"],
                language=row["language"],
                position=row["section_number"] or 0,
                created_at=row["created_at"],
                document_title=row["document_title"],
                metadata=metadata or {},
            )
        return fragments

    async def exists_many(self, ids: Iterable[int]) -> Set[int]:
        ids = list(ids)
        if not ids:
            return set()
        rows = await self.pool.fetch(
            "SELECT id FROM source_sections WHERE id = ANY($1::bigint[])", ids, backend=BACKEND
        )
        return {row["id"] for row in rows}

    async def health_check(self) -> bool:
        return await self.pool.health_check()
