"""Search manager for hybrid semantic and lexical search.

Runs vector similarity (semantic) and full‑text ranking (lexical) searches
concurrently, fuses them with Reciprocal Rank Fusion (or weighted scores),
deduplicates by document, reranks by token overlap and returns the top
results.

Failure model
- Invalid input raises ``ValidationError`` before any source runs
- A failing or timed-out source degrades to empty results; the response
  metadata lists it under ``errors``
- If every requested source fails, ``TotalFailureError`` is raised
"""

import asyncio
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from libs.common.config import SearchConfig
from libs.common.errors import (
    EmbeddingError,
    SearchBackendError,
    SearchError,
    TotalFailureError,
    ValidationError,
)
from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from libs.common.models import RawLexicalHit, RawVectorHit, SearchFilters
from libs.fragment_store.base import FragmentRepository
from libs.lexical_store.query import StructuredQuery
from libs.tag_store.base import TagStore

from ..adapters.embedding_client import EmbeddingProvider
from ..intelligence.query_parser import QueryParser, is_cjk_language
from ..models import FusedResult, HybridResult, SearchMode, SearchOptions, SearchResult
from ..ranking.fusion import RankFusionAlgorithm, create_fusion_algorithm
from ..ranking.rerank import RerankScore, TokenOverlapReranker
from ..retrievers.fulltext import FulltextSearchEngine
from ..retrievers.vector import VectorSearchEngine
from ..runtime.search_log import SearchLogReader, SearchLogRecorder

logger = structlog.get_logger("search_service.search_manager")

LEXICAL_SOURCE = "fulltext"
VECTOR_SOURCE = "vector"


@dataclass
class _Plan:
    """Validated, config-resolved parameters of one search request."""
    mode: SearchMode
    text: str
    language: str
    limit: int
    alpha: float
    rrf_k: int
    fusion_method: str
    fusion: RankFusionAlgorithm
    recall_limit: int
    threshold: float
    tag_boost_weight: float


@dataclass
class _SourceOutcome:
    lexical_hits: List[RawLexicalHit] = field(default_factory=list)
    vector_hits: List[RawVectorHit] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class HybridSearchManager:
    """Coordinates the lexical and vector engines for one search request.

    Responsibilities
    - Validate the query and resolve options against ``SearchConfig``
    - Embed the query (unless an embedding is supplied) and run both engines
    - Fuse, relax-and-retry on empty results, rerank, truncate and enrich
    - Record every request to the search log and metrics
    """

    def __init__(
        self,
        config: SearchConfig,
        fulltext: FulltextSearchEngine,
        vector: VectorSearchEngine,
        tags: TagStore,
        fragments: FragmentRepository,
        embedder: Optional[EmbeddingProvider] = None,
        parser: Optional[QueryParser] = None,
        reranker: Optional[TokenOverlapReranker] = None,
        search_log: Optional[SearchLogRecorder] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config
        self.fulltext = fulltext
        self.vector = vector
        self.tags = tags
        self.fragments = fragments
        self.embedder = embedder
        self.parser = parser or QueryParser()
        self.reranker = reranker or TokenOverlapReranker(
            long_query_tokens=config.kb_search_long_query_tokens,
            long_query_vector_cap=config.kb_search_long_query_vector_cap,
        )
        self.search_log = search_log
        self.metrics = metrics

    async def search(
        self,
        query: Optional[str],
        options: Optional[SearchOptions] = None,
        query_embedding: Optional[Sequence[float]] = None,
        deadline: Optional[float] = None
    ) -> HybridResult:
        """Search in ``options.mode`` (``hybrid``, ``vector`` or ``fulltext``).

        ``deadline`` is an absolute event-loop time; each source's timeout is
        the smaller of the configured source timeout and the time remaining.
        """
        options = options or SearchOptions()
        start_time = time.time()
        try:
            result = await self._search(query, options, query_embedding, deadline, start_time)
        except SearchError as e:
            self._record(query, options, start_time, 0, error=e.message, status=type(e).__name__)
            raise

        error = result.metadata.get("error")
        self._record(
            query,
            options,
            start_time,
            len(result.results),
            error=error,
            status="degraded" if error else "success",
        )
        return result

    async def hybrid_search(
        self,
        query: Optional[str],
        options: Optional[SearchOptions] = None,
        query_embedding: Optional[Sequence[float]] = None,
        deadline: Optional[float] = None
    ) -> HybridResult:
        """Hybrid (vector + full-text) search regardless of ``options.mode``."""
        options = replace(options or SearchOptions(), mode=SearchMode.HYBRID.value)
        return await self.search(query, options, query_embedding, deadline)

    def _record(
        self,
        query: Optional[str],
        options: SearchOptions,
        start_time: float,
        count: int,
        error: Optional[str],
        status: str
    ) -> None:
        duration = time.time() - start_time
        mode = options.mode.value if isinstance(options.mode, SearchMode) else str(options.mode)
        if self.metrics is not None:
            self.metrics.record_search(mode, duration, status)
        if self.search_log is not None:
            self.search_log.record(
                query if isinstance(query, str) else "",
                mode,
                count=count,
                latency_ms=int(round(duration * 1000)),
                error=error,
                filters=_filters_to_dict(options.filters),
            )

    async def health_check(self) -> Dict[str, bool]:
        """Health of the stores behind both engines."""
        return {
            "vector": await self.vector.store.health_check(),
            "fulltext": await self.fulltext.store.health_check(),
            "tags": await self.tags.health_check(),
            "fragments": await self.fragments.health_check(),
        }

    async def statistics(self) -> Dict[str, Any]:
        """Index size and language distribution, plus query analytics when the search log keeps them."""
        index = await self.fulltext.stats()
        data: Dict[str, Any] = {
            "total_indexed": index.indexed_count,
            "language_distribution": dict(index.languages),
            "search_performance": None,
            "popular_queries": [],
        }
        sink = self.search_log.sink if self.search_log is not None else None
        if isinstance(sink, SearchLogReader):
            await self.search_log.drain()
            data["search_performance"] = await sink.performance_stats()
            data["popular_queries"] = await sink.popular_queries()
        return data

    async def close(self) -> None:
        if self.search_log is not None:
            await self.search_log.drain()
        if self.embedder is not None:
            await self.embedder.close()

    # Validation and option resolution

    def validate_query(self, query: Optional[str]) -> str:
        if query is None or not isinstance(query, str) or not query.strip():
            raise ValidationError("Query cannot be empty")

        text = query.strip()
        if len(text) < self.config.kb_search_min_query_length:
            raise ValidationError(
                f"Query too short (minimum {self.config.kb_search_min_query_length} characters)",
                context={"length": len(text)},
            )
        if len(text) > self.config.kb_search_max_query_length:
            raise ValidationError(
                f"Query too long (maximum {self.config.kb_search_max_query_length} characters)",
                context={"length": len(text)},
            )
        return text

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.config.kb_search_default_limit
        limit = _number(limit, int, "limit")
        return max(self.config.kb_search_min_limit, min(limit, self.config.kb_search_max_limit))

    def effective_alpha(self, alpha: Optional[float], text: str, language: str) -> float:
        """Clamp alpha to [0, 1]; cap it for short CJK queries."""
        if alpha is None:
            alpha = self.config.kb_search_default_alpha
        alpha = _number(alpha, float, "alpha")
        if not math.isfinite(alpha):
            raise ValidationError("alpha must be a finite number", context={"alpha": str(alpha)})

        alpha = min(max(alpha, 0.0), 1.0)
        if is_cjk_language(language) and len(text.strip()) <= self.config.kb_search_short_cjk_max_length:
            alpha = min(alpha, self.config.kb_search_short_cjk_alpha_cap)
        return alpha

    def recall_limit(self, limit: int) -> int:
        """``max(rerank_limit, limit)`` rounded up to a whole recall block."""
        block = max(1, self.config.kb_search_recall_block_size)
        base = max(self.config.kb_search_rerank_limit, limit)
        return ((base + block - 1) // block) * block

    def _plan(self, query: Optional[str], options: SearchOptions) -> _Plan:
        try:
            mode = SearchMode(options.mode)
        except ValueError:
            raise ValidationError(f"Unknown search mode: {options.mode}", context={"mode": options.mode})

        text = self.validate_query(query)
        language = options.language or self.parser.detect_language(text)
        limit = self.clamp_limit(options.limit)

        rrf_k = _number(
            options.rrf_k if options.rrf_k is not None else self.config.kb_search_rrf_k, int, "rrf_k"
        )
        if rrf_k < 0:
            raise ValidationError("rrf_k must not be negative", context={"rrf_k": rrf_k})

        fusion_method = options.fusion_method or self.config.kb_search_fusion_method
        try:
            fusion = create_fusion_algorithm(fusion_method, k=float(rrf_k))
        except ValueError as e:
            raise ValidationError(str(e), context={"fusion_method": fusion_method}) from e

        tag_boost_weight = (
            options.tag_boost_weight
            if options.tag_boost_weight is not None
            else self.config.kb_search_tag_boost_weight
        )
        tag_boost_weight = _number(tag_boost_weight, float, "tag_boost_weight")
        if tag_boost_weight < 0:
            raise ValidationError("tag_boost_weight must not be negative")

        threshold = _number(
            options.threshold if options.threshold is not None else self.config.kb_search_vector_threshold,
            float,
            "threshold",
        )
        if not math.isfinite(threshold):
            raise ValidationError("threshold must be a finite number", context={"threshold": str(threshold)})

        return _Plan(
            mode=mode,
            text=text,
            language=language,
            limit=limit,
            alpha=self.effective_alpha(options.alpha, text, language),
            rrf_k=rrf_k,
            fusion_method=fusion_method,
            fusion=fusion,
            recall_limit=self.recall_limit(limit),
            threshold=threshold,
            tag_boost_weight=tag_boost_weight,
        )

    # Source execution

    def _source_timeout(self, deadline: Optional[float]) -> float:
        timeout = self.config.kb_search_source_timeout
        if deadline is not None:
            remaining = deadline - asyncio.get_running_loop().time()
            timeout = min(timeout, max(remaining, 0.0))
        return timeout

    async def _vector_source(
        self,
        plan: _Plan,
        text: str,
        options: SearchOptions,
        query_embedding: Optional[Sequence[float]],
        fallback_threshold: float
    ) -> List[RawVectorHit]:
        vector = query_embedding
        if vector is None:
            if self.embedder is None:
                raise EmbeddingError("No embedding provider configured")
            vector = await self.embedder.embed(text)

        if options.tags:
            return await self.vector.search_with_tags(
                vector,
                options.tags,
                weight=plan.tag_boost_weight,
                threshold=plan.threshold,
                limit=plan.recall_limit,
                fallback_threshold=fallback_threshold,
                filters=options.filters,
                fallback_to_nearest=self.config.kb_search_fallback_to_nearest,
            )
        return await self.vector.search(
            vector,
            limit=plan.recall_limit,
            threshold=plan.threshold,
            fallback_threshold=fallback_threshold,
            filters=options.filters,
            fallback_to_nearest=self.config.kb_search_fallback_to_nearest,
        )

    async def _guard(self, source: str, work: Awaitable[Any], timeout: float) -> Any:
        """Await one source under its timeout; failures degrade to ``[]`` plus a message.

        ``ValidationError`` is re-raised by the caller after the join.
        """
        try:
            return await asyncio.wait_for(work, timeout=timeout), None
        except ValidationError:
            raise
        except asyncio.TimeoutError:
            message = f"{source} search timed out after {timeout:.2f}s"
            error_type = "timeout"
        except SearchError as e:
            message = e.message
            error_type = type(e).__name__
        except Exception as e:
            message = str(e) or type(e).__name__
            error_type = type(e).__name__

        logger.warning("Search source degraded", source=source, error=message, error_type=error_type)
        if self.metrics is not None:
            self.metrics.record_degraded_source(source, error_type)
        return [], message

    async def _run_sources(
        self,
        plan: _Plan,
        text: str,
        structured: StructuredQuery,
        options: SearchOptions,
        query_embedding: Optional[Sequence[float]],
        fallback_threshold: float,
        deadline: Optional[float]
    ) -> _SourceOutcome:
        timeout = self._source_timeout(deadline)
        jobs: Dict[str, Awaitable[Any]] = {}

        if plan.mode in (SearchMode.HYBRID, SearchMode.FULLTEXT):
            jobs[LEXICAL_SOURCE] = self._guard(
                LEXICAL_SOURCE,
                self.fulltext.search(
                    structured,
                    language=plan.language,
                    limit=plan.recall_limit,
                    filters=options.filters,
                    highlight=True,
                ),
                timeout,
            )
        if plan.mode in (SearchMode.HYBRID, SearchMode.VECTOR):
            jobs[VECTOR_SOURCE] = self._guard(
                VECTOR_SOURCE,
                self._vector_source(plan, text, options, query_embedding, fallback_threshold),
                timeout,
            )

        # single join point; both sources always run to completion
        results = await asyncio.gather(*jobs.values(), return_exceptions=True)

        outcome = _SourceOutcome()
        for source, result in zip(jobs, results):
            if isinstance(result, BaseException):
                raise result
            hits, error = result
            if error is not None:
                outcome.errors[source] = error
            if source == LEXICAL_SOURCE:
                outcome.lexical_hits = hits
            else:
                outcome.vector_hits = hits

        if outcome.errors and set(outcome.errors) == set(jobs):
            raise TotalFailureError(
                "All search sources failed", errors=dict(outcome.errors), context={"query": text}
            )

        if self.metrics is not None:
            if LEXICAL_SOURCE in jobs:
                self.metrics.record_source_results(LEXICAL_SOURCE, len(outcome.lexical_hits))
            if VECTOR_SOURCE in jobs:
                self.metrics.record_source_results(VECTOR_SOURCE, len(outcome.vector_hits))
        return outcome

    def _fuse(self, plan: _Plan, outcome: _SourceOutcome) -> List[FusedResult]:
        if plan.mode == SearchMode.VECTOR:
            alpha = 1.0
        elif plan.mode == SearchMode.FULLTEXT:
            alpha = 0.0
        else:
            alpha = plan.alpha
        return plan.fusion.fuse_results(
            outcome.vector_hits,
            outcome.lexical_hits,
            alpha,
            tag_boost=self.config.kb_search_fusion_tag_boost,
        )

    # Rerank and enrichment

    async def _tag_names(self, fragment_ids: List[int]) -> Dict[int, List[str]]:
        if not fragment_ids:
            return {}
        tags_by_fragment = await self.tags.tags_of_many(fragment_ids)
        all_tags: Set[int] = set()
        for tag_ids in tags_by_fragment.values():
            all_tags.update(tag_ids)
        names = await self.tags.names_of(all_tags) if all_tags else {}
        return {
            fragment_id: sorted(names[tag_id] for tag_id in tag_ids if tag_id in names)
            for fragment_id, tag_ids in tags_by_fragment.items()
        }

    async def _rerank(
        self,
        plan: _Plan,
        options: SearchOptions,
        candidates: List[FusedResult],
        tag_names: Dict[int, List[str]],
        structured: StructuredQuery
    ) -> List[Tuple[FusedResult, Optional[RerankScore]]]:
        """Rerank on the query's positive terms; operators and negated terms do not count."""
        if not options.rerank or not candidates:
            return [(candidate, None) for candidate in candidates]
        vector_weight = plan.alpha
        if plan.mode == SearchMode.VECTOR:
            vector_weight = 1.0
        elif plan.mode == SearchMode.FULLTEXT:
            vector_weight = 0.0
        text = " ".join(structured.positive_texts()) or plan.text
        return self.reranker.rerank(candidates, text, vector_weight, tag_names)

    def _explanation(self, plan: _Plan, fused: FusedResult, score: Optional[RerankScore]) -> Dict[str, Any]:
        explanation: Dict[str, Any] = {
            "fusion_method": plan.fusion_method,
            "alpha": plan.alpha,
            "rrf_k": plan.rrf_k,
            "lexical_rank": fused.lexical_rank,
            "vector_rank": fused.vector_rank,
            "fusion_score": fused.fusion_score,
            "contributions": dict(fused.contributions),
            "tag_boost": fused.tag_boost,
            "matched_tag_ids": list(fused.matched_tag_ids),
            "rerank": None,
        }
        if score is not None:
            explanation["rerank"] = {
                "token_score": score.token_score,
                "vector_score": score.vector_score,
                "rank_feature": score.rank_feature,
                "token_weight": score.token_weight,
                "vector_weight": score.vector_weight,
            }
        return explanation

    async def _build_results(
        self,
        plan: _Plan,
        options: SearchOptions,
        ranked: List[Tuple[FusedResult, Optional[RerankScore]]],
        tag_names: Dict[int, List[str]]
    ) -> List[SearchResult]:
        fragments = {}
        if ranked and (options.include_metadata or options.include_content):
            fragments = await self.fragments.get_many([fused.fragment_id for fused, _ in ranked])

        results = []
        for fused, score in ranked:
            fragment = fragments.get(fused.fragment_id)
            content = None
            if options.include_content:
                content = fused.content if fused.content is not None else (fragment.content if fragment else None)

            metadata = None
            if options.include_metadata:
                metadata = {
                    "fragment_id": fused.fragment_id,
                    "document_id": fused.document_id,
                    "title": fused.title if fused.title is not None else (fragment.title if fragment else None),
                    "document_title": fragment.document_title if fragment else None,
                    "language": fragment.language if fragment else None,
                    "position": fragment.position if fragment else None,
                    "created_at": fragment.created_at.isoformat() if fragment and fragment.created_at else None,
                    "tags": tag_names.get(fused.fragment_id, []),
                }

            results.append(
                SearchResult(
                    fragment_id=fused.fragment_id,
                    document_id=fused.document_id,
                    title=fused.title,
                    content=content,
                    snippet=fused.snippet,
                    lexical_score=fused.lexical_score,
                    vector_score=fused.vector_score,
                    tag_boost=fused.tag_boost,
                    fusion_score=fused.fusion_score,
                    combined_score=score.combined_score if score is not None else fused.fusion_score,
                    contributions=dict(fused.contributions),
                    metadata=metadata,
                    explanation=self._explanation(plan, fused, score) if options.include_explanations else None,
                )
            )
        return results

    async def _search(
        self,
        query: Optional[str],
        options: SearchOptions,
        query_embedding: Optional[Sequence[float]],
        deadline: Optional[float],
        start_time: float
    ) -> HybridResult:
        plan = self._plan(query, options)
        structured = self.parser.parse(plan.text, plan.language)

        logger.info(
            "Search started",
            mode=plan.mode.value,
            query=plan.text,
            language=plan.language,
            limit=plan.limit,
            alpha=plan.alpha,
            recall_limit=plan.recall_limit
        )

        outcome = await self._run_sources(
            plan,
            plan.text,
            structured,
            options,
            query_embedding,
            self.config.kb_search_vector_fallback_threshold,
            deadline,
        )
        errors = dict(outcome.errors)
        fused = self._fuse(plan, outcome)

        relaxed = False
        if not fused:
            relaxed = True
            relaxed_text = self.parser.relax(plan.text)
            logger.info("No fused results, retrying with relaxed query", relaxed_query=relaxed_text)
            if self.metrics is not None:
                self.metrics.record_relaxed_query()

            structured = self.parser.parse(relaxed_text, plan.language)
            outcome = await self._run_sources(
                plan,
                relaxed_text,
                structured,
                options,
                query_embedding,
                self.config.kb_search_relaxed_fallback_threshold,
                deadline,
            )
            errors.update(outcome.errors)
            fused = self._fuse(plan, outcome)

        candidates = fused[:plan.recall_limit]
        tag_names: Dict[int, List[str]] = {}
        if candidates and (options.rerank or options.include_metadata):
            try:
                tag_names = await self._tag_names([c.fragment_id for c in candidates])
            except SearchBackendError as e:
                logger.warning("Tag lookup failed, ranking without tag names", error=e.message)
                errors["tags"] = e.message

        ranked = (await self._rerank(plan, options, candidates, tag_names, structured))[:plan.limit]
        results = await self._build_results(plan, options, ranked, tag_names)

        execution_time_ms = int(round((time.time() - start_time) * 1000))
        metadata: Dict[str, Any] = {
            "mode": plan.mode.value,
            "total_count": len(results),
            "execution_time_ms": execution_time_ms,
            "language": plan.language,
            "alpha": plan.alpha,
            "rrf_k": plan.rrf_k,
            "fusion_method": plan.fusion_method,
            "recall_limit": plan.recall_limit,
            "lexical_result_count": len(outcome.lexical_hits),
            "vector_result_count": len(outcome.vector_hits),
            "relaxed": relaxed,
            "errors": errors,
            "score_stats": score_stats(results),
        }
        if errors:
            metadata["error"] = "; ".join(f"{source}: {message}" for source, message in sorted(errors.items()))

        log_performance(
            "search",
            execution_time_ms,
            mode=plan.mode.value,
            results_count=len(results),
            relaxed=relaxed,
            degraded=sorted(errors)
        )
        return HybridResult(query=plan.text, results=results, metadata=metadata)


def score_stats(results: Sequence[SearchResult]) -> Dict[str, float]:
    if not results:
        return {}
    scores = [result.combined_score for result in results]
    return {
        "min": round(min(scores), 4),
        "max": round(max(scores), 4),
        "avg": round(sum(scores) / len(scores), 4),
    }


def _number(value: Any, cast: Callable[[Any], Any], name: str) -> Any:
    """``cast(value)``, reporting conversion failures as ``ValidationError``."""
    try:
        return cast(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{name} must be a number", context={name: repr(value)}) from None


def _filters_to_dict(filters: Optional[SearchFilters]) -> Dict[str, Any]:
    if filters is None or filters.is_empty:
        return {}
    data: Dict[str, Any] = {}
    if filters.document_ids is not None:
        data["document_ids"] = sorted(filters.document_ids)
    if filters.tag_ids is not None:
        data["tag_ids"] = sorted(filters.tag_ids)
    if filters.date_from is not None:
        data["date_from"] = filters.date_from.isoformat()
    if filters.date_to is not None:
        data["date_to"] = filters.date_to.isoformat()
    if filters.model is not None:
        data["model"] = filters.model
    return data
