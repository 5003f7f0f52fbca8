"""Vector similarity retrieval with staged threshold fallback.

The lookup runs against the vector store in up to three stages: the primary
``threshold``, a lower ``fallback_threshold``, and finally plain nearest
neighbours without any threshold. Filters are applied to each
stage's matches as post-filter intersections, and a stage counts as empty
when nothing survives them. The store is over-fetched when any are set.
"""

import math
from numbers import Real
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from libs.common.errors import SearchBackendError, SearchError, ValidationError
from libs.common.models import RawVectorHit, SearchFilters
from libs.fragment_store.base import FragmentRepository
from libs.tag_store.base import TagStore
from libs.vector_store.base import VectorMatch, VectorStore

logger = structlog.get_logger("search_service.vector")

TAG_BOOST_UNIT = 0.1


class VectorSearchEngine:
    """Nearest-neighbour search over fragment embeddings."""

    def __init__(
        self,
        store: VectorStore,
        fragments: FragmentRepository,
        tags: TagStore,
        vector_dimension: Optional[int] = None,
        filter_overfetch: int = 4
    ):
        self.store = store
        self.fragments = fragments
        self.tags = tags
        self.vector_dimension = vector_dimension
        self.filter_overfetch = max(1, filter_overfetch)

    def validate_vector(self, vector: Optional[Sequence[float]]) -> List[float]:
        if vector is None:
            raise ValidationError("Query vector is required")
        if isinstance(vector, (str, bytes)) or not isinstance(vector, Iterable):
            raise ValidationError("Query vector must be a sequence of numbers")

        values = list(vector)
        if not values:
            raise ValidationError("Query vector cannot be empty")
        for value in values:
            if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
                raise ValidationError(
                    "Query vector must contain only finite numbers", context={"value": repr(value)}
                )
        if self.vector_dimension and len(values) != self.vector_dimension:
            raise ValidationError(
                "Vector dimension mismatch",
                context={"expected": self.vector_dimension, "actual": len(values)},
            )
        return [float(value) for value in values]

    async def _nearest(
        self,
        vector: List[float],
        k: int,
        threshold: float,
        fallback_threshold: float,
        fallback_to_nearest: bool,
        filters: SearchFilters
    ) -> Tuple[List[RawVectorHit], Optional[float]]:
        """Run the threshold fallback chain.

        Each stage is filtered before deciding whether to fall through.
        Returns the hits and the threshold that produced them (``None`` for
        the unthresholded stage).
        """
        hits = await self._resolve(await self.store.nearest(vector, k, min_score=threshold), filters)
        if hits:
            return hits, threshold

        if fallback_threshold < threshold:
            logger.info(
                "No vector results at threshold, retrying with fallback threshold",
                threshold=threshold,
                fallback_threshold=fallback_threshold
            )
            hits = await self._resolve(
                await self.store.nearest(vector, k, min_score=fallback_threshold), filters
            )
            if hits:
                return hits, fallback_threshold

        if fallback_to_nearest:
            logger.info("No vector results after threshold fallback, returning nearest neighbours")
            return await self._resolve(await self.store.nearest(vector, k), filters), None

        return [], threshold

    async def _resolve(
        self,
        matches: List[VectorMatch],
        filters: SearchFilters
    ) -> List[RawVectorHit]:
        if filters.model is not None:
            matches = [m for m in matches if m.model == filters.model]

        # one fragment may have embeddings from several models; keep the best
        best: Dict[int, VectorMatch] = {}
        for match in matches:
            if match.fragment_id not in best or match.score > best[match.fragment_id].score:
                best[match.fragment_id] = match

        fragments = await self.fragments.get_many(list(best))
        allowed: Optional[Set[int]] = None
        if filters.tag_ids is not None:
            tags_by_fragment = await self.tags.tags_of_many(list(fragments))
            allowed = {
                fragment_id
                for fragment_id, tag_ids in tags_by_fragment.items()
                if tag_ids & filters.tag_ids
            }

        hits = []
        for fragment_id, match in best.items():
            fragment = fragments.get(fragment_id)
            if fragment is None:
                continue
            if filters.document_ids is not None and fragment.document_id not in filters.document_ids:
                continue
            if allowed is not None and fragment_id not in allowed:
                continue
            if not filters.accepts_date(fragment.created_at):
                continue
            hits.append(
                RawVectorHit(
                    fragment_id=fragment_id,
                    document_id=fragment.document_id,
                    similarity=match.score,
                    score=match.score,
                    title=fragment.title,
                    content=fragment.content,
                    model=match.model,
                )
            )

        hits.sort(key=lambda h: (-h.similarity, h.fragment_id))
        return hits

    async def _search(
        self,
        vector: Optional[Sequence[float]],
        limit: int,
        threshold: float,
        fallback_threshold: float,
        filters: Optional[SearchFilters],
        fallback_to_nearest: bool
    ) -> Tuple[List[RawVectorHit], Optional[float]]:
        values = self.validate_vector(vector)
        limit = max(1, limit)
        filters = filters or SearchFilters()
        k = limit if filters.is_empty else limit * self.filter_overfetch

        try:
            hits, applied_threshold = await self._nearest(
                values, k, threshold, fallback_threshold, fallback_to_nearest, filters
            )
        except SearchError:
            raise
        except Exception as e:
            logger.error("Vector search failed", error=str(e))
            raise SearchBackendError(f"Vector search failed: {e}", backend="vector") from e

        return hits[:limit], applied_threshold

    async def search(
        self,
        vector: Optional[Sequence[float]],
        limit: int = 10,
        threshold: float = 0.3,
        fallback_threshold: float = 0.1,
        filters: Optional[SearchFilters] = None,
        fallback_to_nearest: bool = True
    ) -> List[RawVectorHit]:
        """Return fragments ordered by cosine similarity, highest first."""
        hits, _ = await self._search(
            vector, limit, threshold, fallback_threshold, filters, fallback_to_nearest
        )
        logger.debug("Vector search completed", results_count=len(hits), limit=limit)
        return hits

    async def expand_tags(self, tag_ids: Iterable[int]) -> Dict[int, Set[int]]:
        """Map each requested tag to itself plus all of its descendants."""
        expanded = {}
        for tag_id in tag_ids:
            expanded[tag_id] = {tag_id} | await self.tags.descendants_of(tag_id)
        return expanded

    async def search_with_tags(
        self,
        vector: Optional[Sequence[float]],
        tags: Sequence[int],
        weight: float = 1.0,
        threshold: float = 0.3,
        limit: int = 10,
        fallback_threshold: float = 0.1,
        filters: Optional[SearchFilters] = None,
        fallback_to_nearest: bool = True
    ) -> List[RawVectorHit]:
        """Vector search reranked by tag matches.

        ``boosted = similarity + weight * match_count * 0.1`` where
        ``match_count`` is the number of requested tags whose subtree
        intersects the fragment's tags. Hits are sorted and re-thresholded on
        the boosted score.
        """
        hits, applied_threshold = await self._search(
            vector, limit, threshold, fallback_threshold, filters, fallback_to_nearest
        )
        if not tags or not hits:
            return hits

        expanded = await self.expand_tags(tags)
        tags_by_fragment = await self.tags.tags_of_many([hit.fragment_id for hit in hits])

        boosted_hits = []
        for hit in hits:
            fragment_tags = tags_by_fragment.get(hit.fragment_id, set())
            matched = tuple(sorted(tag for tag, subtree in expanded.items() if subtree & fragment_tags))
            boost = weight * len(matched) * TAG_BOOST_UNIT
            boosted = hit.similarity + boost
            if applied_threshold is not None and boosted < applied_threshold:
                continue
            boosted_hits.append(
                RawVectorHit(
                    fragment_id=hit.fragment_id,
                    document_id=hit.document_id,
                    similarity=hit.similarity,
                    score=boosted,
                    title=hit.title,
                    content=hit.content,
                    model=hit.model,
                    tag_boost=boost,
                    matched_tag_ids=matched,
                )
            )

        boosted_hits.sort(key=lambda h: (-h.score, h.fragment_id))
        logger.debug(
            "Tag-boosted vector search completed",
            results_count=len(boosted_hits),
            tags=list(tags),
            weight=weight
        )
        return boosted_hits[:limit]
