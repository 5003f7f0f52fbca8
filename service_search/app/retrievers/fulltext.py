"""Full-text retrieval and lexical index maintenance."""

from typing import Dict, Iterable, List, Optional, Sequence, Union

import structlog

from libs.common.errors import SearchBackendError, SearchError, ValidationError
from libs.common.metrics import measure_time
from libs.common.models import Fragment, RawLexicalHit, SearchFilters
from libs.fragment_store.base import FragmentRepository
from libs.lexical_store.base import LexicalIndexStats, LexicalStore
from libs.lexical_store.query import StructuredQuery
from libs.lexical_store.tokenizers import resolve_tokenizer

from ..intelligence.query_parser import QueryParser

logger = structlog.get_logger("search_service.fulltext")

MIN_SUGGESTION_PREFIX = 2


class FulltextSearchEngine:
    """Lexical search over the per-fragment index.

    Index entries are keyed by fragment id, so re-indexing a fragment replaces
    its entry. Queries may be raw text (parsed with ``QueryParser``, language
    auto-detected) or an already parsed ``StructuredQuery``.
    """

    def __init__(
        self,
        store: LexicalStore,
        fragments: FragmentRepository,
        parser: Optional[QueryParser] = None,
        max_results: int = 100
    ):
        self.store = store
        self.fragments = fragments
        self.parser = parser or QueryParser()
        self.max_results = max_results

    async def index(
        self,
        fragment_id: int,
        title: Optional[str],
        body: str,
        language: Optional[str] = None,
        document_id: Optional[int] = None
    ) -> None:
        """Create or replace the index entry of a fragment.

        ``document_id`` is looked up in the fragment repository when omitted.
        """
        if document_id is None:
            fragments = await self.fragments.get_many([fragment_id])
            if fragment_id not in fragments:
                raise ValidationError("Unknown fragment", context={"fragment_id": fragment_id})
            document_id = fragments[fragment_id].document_id

        tokenizer = resolve_tokenizer(
            language or self.parser.detect_language(f"{title or ''} {body or ''}")
        )
        await self.store.upsert_index(fragment_id, document_id, title, body or "", tokenizer)
        logger.debug("Indexed fragment", fragment_id=fragment_id, language=tokenizer.language)

    @measure_time("lexical_batch_index")
    async def batch_index(self, fragments: Iterable[Fragment]) -> Dict[str, int]:
        """Index many fragments, counting per-item successes and failures."""
        success = 0
        failed = 0
        for fragment in fragments:
            try:
                await self.index(
                    fragment.id,
                    fragment.title,
                    fragment.content,
                    language=fragment.language,
                    document_id=fragment.document_id,
                )
                success += 1
            except SearchError as e:
                failed += 1
                logger.warning("Failed to index fragment", fragment_id=fragment.id, error=e.message)

        logger.info("Batch indexing completed", success=success, failed=failed)
        return {"success": success, "failed": failed}

    async def remove(self, fragment_id: int) -> bool:
        return await self.store.delete_index(fragment_id)

    @measure_time("lexical_cleanup")
    async def cleanup_orphaned(self) -> int:
        removed = await self.store.delete_orphaned()
        logger.info("Removed orphaned index entries", removed=removed)
        return removed

    async def search(
        self,
        query: Union[str, StructuredQuery],
        language: Optional[str] = None,
        limit: int = 20,
        filters: Optional[SearchFilters] = None,
        highlight: bool = True
    ) -> List[RawLexicalHit]:
        if isinstance(query, StructuredQuery):
            structured = query
        else:
            structured = self.parser.parse(query, language)

        tokenizer = resolve_tokenizer(language or structured.language)
        k = max(1, min(limit, self.max_results))

        try:
            hits = await self.store.query(structured, tokenizer, k, filters, highlight)
        except SearchError:
            raise
        except Exception as e:
            logger.error("Full-text search failed", error=str(e))
            raise SearchBackendError(f"Full-text search failed: {e}", backend="fulltext") from e

        logger.debug(
            "Full-text search completed",
            results_count=len(hits),
            kind=structured.kind.value,
            language=tokenizer.language
        )
        return hits

    async def multilingual_search(
        self,
        query: str,
        languages: Sequence[str],
        limit: int = 20,
        filters: Optional[SearchFilters] = None,
        highlight: bool = True
    ) -> List[RawLexicalHit]:
        """Search once per language and merge, keeping each fragment's best score.

        A language whose search fails is skipped; the call fails only when
        every language does.
        """
        resolved = list(dict.fromkeys(resolve_tokenizer(language).language for language in languages or ()))
        if not resolved:
            raise ValidationError("At least one language is required")

        best: Dict[int, RawLexicalHit] = {}
        failures: Dict[str, str] = {}
        for language in resolved:
            try:
                hits = await self.search(query, language=language, limit=limit, filters=filters, highlight=highlight)
            except SearchBackendError as e:
                logger.warning("Full-text search failed for language", language=language, error=e.message)
                failures[language] = e.message
                continue
            for hit in hits:
                current = best.get(hit.fragment_id)
                if current is None or hit.score > current.score:
                    best[hit.fragment_id] = hit

        if len(failures) == len(resolved):
            raise SearchBackendError(
                "Full-text search failed for every language", backend="fulltext", context={"errors": failures}
            )

        merged = sorted(best.values(), key=lambda h: (-h.score, h.fragment_id))
        logger.debug("Multilingual search completed", results_count=len(merged), languages=resolved)
        return merged[:max(1, min(limit, self.max_results))]

    async def suggestions(self, prefix: Optional[str], language: Optional[str] = None, limit: int = 10) -> List[str]:
        """Completions for the last word of ``prefix``; shorter than two characters gives none."""
        words = (prefix or "").split()
        if not words or len(words[-1]) < MIN_SUGGESTION_PREFIX:
            return []

        language = resolve_tokenizer(language).language if language else None
        try:
            return await self.store.suggest(words[-1], language, max(1, min(limit, self.max_results)))
        except SearchError:
            raise
        except Exception as e:
            logger.error("Suggestion lookup failed", error=str(e))
            raise SearchBackendError(f"Suggestion lookup failed: {e}", backend="fulltext") from e

    async def stats(self) -> LexicalIndexStats:
        return await self.store.stats()
