"""PostgreSQL full-text lexical store.

Index entries live in ``section_fts`` as weighted ``tsvector`` columns (title
``A``, body ``B``, combined). Structured queries are compiled into a
parameterized ``tsquery`` expression: leaves become ``plainto_tsquery`` or
``phraseto_tsquery`` calls joined with ``&&``, ``||`` and ``!!``. Query text
is always bound as a parameter, never interpolated.
"""

from typing import Any, List, Optional, Set

import structlog

from libs.common.db import PostgresPool
from libs.common.models import RawLexicalHit, SearchFilters

from .base import LexicalIndexStats, LexicalStore, rank_completions
from .query import AndNode, NotNode, OrNode, PhraseNode, QueryNode, StructuredQuery, TermNode
from .snippets import MARK_END, MARK_START, SNIPPET_MAX_WORDS, mark_snippet
from .tokenizers import TokenizerConfig

logger = structlog.get_logger("lexical_store.postgres")

BACKEND = "fulltext"

# candidate rows fetched per requested suggestion
SUGGEST_ROW_FACTOR = 10

HEADLINE_OPTIONS = (
    f"StartSel={MARK_START}, StopSel={MARK_END}, "
    f"MaxWords={SNIPPET_MAX_WORDS}, MinWords=15, MaxFragments=3"
)


def compile_tsquery(node: QueryNode, tokenizer: TokenizerConfig, params: List[Any]) -> str:
    """Compile ``node`` to a ``tsquery`` SQL expression.

    ``params`` must already hold the regconfig name at ``$1``; leaf texts are
    appended to it and referenced by position.
    """
    if isinstance(node, (TermNode, PhraseNode)):
        params.append(tokenizer.to_pg_text(node.text))
        function = "plainto_tsquery" if isinstance(node, TermNode) else "phraseto_tsquery"
        return f"{function}($1::regconfig, ${len(params)})"
    if isinstance(node, AndNode):
        return f"({compile_tsquery(node.left, tokenizer, params)} && {compile_tsquery(node.right, tokenizer, params)})"
    if isinstance(node, OrNode):
        return f"({compile_tsquery(node.left, tokenizer, params)} || {compile_tsquery(node.right, tokenizer, params)})"
    if isinstance(node, NotNode):
        return f"(!! {compile_tsquery(node.operand, tokenizer, params)})"
    raise TypeError(f"Unknown query node: {type(node).__name__}")


def escape_like(text: str) -> str:
    """Escape ``LIKE`` wildcards (the default escape character is a backslash)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresLexicalStore(LexicalStore):
    """``tsvector``-backed lexical store on the shared PostgreSQL pool."""

    def __init__(self, pool: PostgresPool):
        self.pool = pool

    async def upsert_index(
        self,
        fragment_id: int,
        document_id: int,
        title: Optional[str],
        body: str,
        tokenizer: TokenizerConfig
    ) -> None:
        query = """
            INSERT INTO section_fts (
                section_id, document_id, language,
                fts_title, fts_content, fts_combined, updated_at
            )
            VALUES (
                $1, $2, $3,
                setweight(to_tsvector($4::regconfig, $5), 'A'),
                setweight(to_tsvector($4::regconfig, $6), 'B'),
                setweight(to_tsvector($4::regconfig, $5), 'A')
                    || setweight(to_tsvector($4::regconfig, $6), 'B'),
                CURRENT_TIMESTAMP
            )
            ON CONFLICT (section_id)
            DO UPDATE SET
                document_id = EXCLUDED.document_id,
                language = EXCLUDED.language,
                fts_title = EXCLUDED.fts_title,
                fts_content = EXCLUDED.fts_content,
                fts_combined = EXCLUDED.fts_combined,
                updated_at = CURRENT_TIMESTAMP
        """
        await self.pool.execute(
            query,
            fragment_id,
            document_id,
            tokenizer.language,
            tokenizer.pg_config,
            tokenizer.to_pg_text(title or ""),
            tokenizer.to_pg_text(body or ""),
            backend=BACKEND,
        )

    async def delete_index(self, fragment_id: int) -> bool:
        result = await self.pool.execute(
            "DELETE FROM section_fts WHERE section_id = $1", fragment_id, backend=BACKEND
        )
        return result.split()[-1] != "0"

    async def delete_orphaned(self) -> int:
        result = await self.pool.execute(
            """
            DELETE FROM section_fts f
            WHERE NOT EXISTS (SELECT 1 FROM source_sections s WHERE s.id = f.section_id)
            """,
            backend=BACKEND,
        )
        return int(result.split()[-1])

    async def query(
        self,
        structured_query: StructuredQuery,
        tokenizer: TokenizerConfig,
        k: int,
        filters: Optional[SearchFilters] = None,
        highlight: bool = True
    ) -> List[RawLexicalHit]:
        params: List[Any] = [tokenizer.pg_config]
        tsquery = compile_tsquery(structured_query.root, tokenizer, params)

        conditions = ["f.fts_combined @@ q.query"]
        if filters is not None:
            if filters.document_ids is not None:
                params.append(list(filters.document_ids))
                conditions.append(f"f.document_id = ANY(${len(params)}::bigint[])")
            if filters.tag_ids is not None:
                params.append(list(filters.tag_ids))
                conditions.append(
                    "EXISTS (SELECT 1 FROM section_tags st WHERE st.section_id = f.section_id "
                    f"AND st.tag_id = ANY(${len(params)}::bigint[]))"
                )
            if filters.date_from is not None:
                params.append(filters.date_from)
                conditions.append(f"s.created_at >= ${len(params)}")
            if filters.date_to is not None:
                params.append(filters.date_to)
                conditions.append(f"s.created_at <= ${len(params)}")

        # ts_headline cannot see pre-shingled CJK lexemes in the raw content
        use_headline = highlight and not tokenizer.pre_tokenize
        headline = (
            f"ts_headline($1::regconfig, s.content, q.query, '{HEADLINE_OPTIONS}')"
            if use_headline else "NULL"
        )

        params.append(k)
        sql = f"""
            WITH q AS (SELECT {tsquery} AS query)
            SELECT f.section_id, f.document_id, f.language,
                   s.section_title, s.content,
                   ts_rank(f.fts_combined, q.query) AS rank_score,
                   {headline} AS highlight
            FROM section_fts f
            JOIN source_sections s ON s.id = f.section_id
            CROSS JOIN q
            WHERE {" AND ".join(conditions)}
            ORDER BY rank_score DESC, f.section_id ASC
            LIMIT ${len(params)}
        """
        rows = await self.pool.fetch(sql, *params, backend=BACKEND)

        terms: Set[str] = set()
        if highlight and not use_headline:
            for text in structured_query.positive_texts():
                terms.update(tokenizer.tokenize(text))

        hits = []
        for row in rows:
            snippet = None
            if use_headline:
                snippet = row["highlight"]
            elif highlight:
                snippet = mark_snippet(row["content"] or "", terms, tokenizer)
            hits.append(
                RawLexicalHit(
                    fragment_id=row["section_id"],
                    document_id=row["document_id"],
                    score=float(row["rank_score"]),
                    language=row["language"],
                    title=row["section_title"],
                    content=row["content"],
                    snippet=snippet,
                )
            )

        logger.debug("PostgreSQL lexical query completed", results_count=len(hits), k=k)
        return hits

    async def suggest(self, prefix: str, language: Optional[str], limit: int) -> List[str]:
        pattern = "%" + escape_like(prefix) + "%"
        rows = await self.pool.fetch(
            """
            SELECT s.section_title, s.content
            FROM section_fts f
            JOIN source_sections s ON s.id = f.section_id
            WHERE ($1::text IS NULL OR f.language = $1)
              AND (s.section_title ILIKE $2 OR s.content ILIKE $2)
            LIMIT $3
            """,
            language,
            pattern,
            limit * SUGGEST_ROW_FACTOR,
            backend=BACKEND,
        )
        texts = [text for row in rows for text in (row["section_title"], row["content"])]
        return rank_completions(texts, prefix, limit)

    async def stats(self) -> LexicalIndexStats:
        rows = await self.pool.fetch(
            "SELECT language, COUNT(*) AS count FROM section_fts GROUP BY language",
            backend=BACKEND,
        )
        languages = {row["language"]: int(row["count"]) for row in rows}
        return LexicalIndexStats(indexed_count=sum(languages.values()), languages=languages)

    async def health_check(self) -> bool:
        return await self.pool.health_check()
