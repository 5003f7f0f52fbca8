"""Result fusion algorithms for hybrid search."""

from typing import Dict, List, Optional, Sequence

import structlog

from libs.common.models import RawLexicalHit, RawVectorHit

from ..models import FusedResult, FusionMethod

logger = structlog.get_logger("search_fusion")


def deduplicate_by_document(results: Sequence[FusedResult]) -> List[FusedResult]:
    """Keep the best fragment per document.

    Best means highest ``fusion_score``; ties go to the lower fragment id.
    The output is sorted the same way.
    """
    ordered = sorted(results, key=lambda r: (-r.fusion_score, r.fragment_id))
    seen = set()
    deduplicated = []
    for result in ordered:
        if result.document_id in seen:
            continue
        seen.add(result.document_id)
        deduplicated.append(result)
    return deduplicated


def min_max_normalize(scores: Dict[int, float]) -> Dict[int, float]:
    """Scale scores to [0, 1].

    When all scores are equal, positive scores map to 1.0 and the rest to 0.0.
    """
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high > low:
        return {key: (value - low) / (high - low) for key, value in scores.items()}
    return {key: 1.0 if value > 0 else 0.0 for key, value in scores.items()}


class RankFusionAlgorithm:
    """Base class for rank fusion algorithms.

    Subclasses score each fragment from its vector and lexical evidence;
    merging by fragment id, the optional tag boost and document-level
    deduplication are shared here.
    """

    name = "base"

    def _score(
        self,
        vector_hits: Sequence[RawVectorHit],
        lexical_hits: Sequence[RawLexicalHit],
        alpha: float
    ) -> Dict[int, Dict[str, float]]:
        """Return ``{fragment_id: {"vector": ..., "text": ...}}`` contributions."""
        raise NotImplementedError

    def fuse_results(
        self,
        vector_hits: Sequence[RawVectorHit],
        lexical_hits: Sequence[RawLexicalHit],
        alpha: float,
        tag_boost: bool = False
    ) -> List[FusedResult]:
        """Fuse both ranked lists into one list, deduplicated by document."""
        contributions = self._score(vector_hits, lexical_hits, alpha)

        merged: Dict[int, FusedResult] = {}
        for rank, hit in enumerate(lexical_hits, start=1):
            if hit.fragment_id in merged:
                continue
            merged[hit.fragment_id] = FusedResult(
                fragment_id=hit.fragment_id,
                document_id=hit.document_id,
                fusion_score=0.0,
                lexical_score=hit.score,
                lexical_rank=rank,
                title=hit.title,
                content=hit.content,
                snippet=hit.snippet,
            )

        for rank, hit in enumerate(vector_hits, start=1):
            result = merged.get(hit.fragment_id)
            if result is None:
                result = FusedResult(
                    fragment_id=hit.fragment_id,
                    document_id=hit.document_id,
                    fusion_score=0.0,
                    title=hit.title,
                    content=hit.content,
                )
                merged[hit.fragment_id] = result
            elif result.vector_rank is not None:
                continue
            result.vector_score = hit.similarity
            result.vector_rank = rank
            result.tag_boost = hit.tag_boost
            result.matched_tag_ids = hit.matched_tag_ids

        for fragment_id, result in merged.items():
            parts = contributions.get(fragment_id, {})
            result.contributions = {
                "text": parts.get("text", 0.0),
                "vector": parts.get("vector", 0.0),
            }
            result.fusion_score = result.contributions["text"] + result.contributions["vector"]
            if tag_boost:
                result.fusion_score += result.tag_boost

        fused = deduplicate_by_document(list(merged.values()))

        logger.info(
            "Fusion completed",
            fusion_algorithm=self.name,
            semantic_count=len(vector_hits),
            lexical_count=len(lexical_hits),
            fused_count=len(fused),
            alpha=alpha
        )
        return fused


class ReciprocalRankFusion(RankFusionAlgorithm):
    """Reciprocal Rank Fusion (RRF) algorithm.

    ``score = alpha / (k + r_vector) + (1 - alpha) / (k + r_text)`` with
    1-based ranks; a fragment missing from a list gets no contribution from it.
    """

    name = FusionMethod.RRF.value

    def __init__(self, k: float = 60.0):
        self.k = k  # RRF parameter

    def _score(self, vector_hits, lexical_hits, alpha):
        scores: Dict[int, Dict[str, float]] = {}
        for rank, hit in enumerate(vector_hits, start=1):
            scores.setdefault(hit.fragment_id, {}).setdefault("vector", alpha / (self.k + rank))
        for rank, hit in enumerate(lexical_hits, start=1):
            scores.setdefault(hit.fragment_id, {}).setdefault("text", (1.0 - alpha) / (self.k + rank))
        return scores


class WeightedScoreFusion(RankFusionAlgorithm):
    """Weighted score fusion over min-max normalized scores.

    ``score = alpha * vector_norm + (1 - alpha) * text_norm``
    """

    name = FusionMethod.WEIGHTED.value

    def _score(self, vector_hits, lexical_hits, alpha):
        vector_raw: Dict[int, float] = {}
        for hit in vector_hits:
            vector_raw.setdefault(hit.fragment_id, hit.score)
        lexical_raw: Dict[int, float] = {}
        for hit in lexical_hits:
            lexical_raw.setdefault(hit.fragment_id, hit.score)

        scores: Dict[int, Dict[str, float]] = {}
        for fragment_id, value in min_max_normalize(vector_raw).items():
            scores.setdefault(fragment_id, {})["vector"] = alpha * value
        for fragment_id, value in min_max_normalize(lexical_raw).items():
            scores.setdefault(fragment_id, {})["text"] = (1.0 - alpha) * value
        return scores


def create_fusion_algorithm(algorithm: Optional[str] = "rrf", **params) -> RankFusionAlgorithm:
    """Create a fusion algorithm instance."""

    if algorithm in (None, FusionMethod.RRF.value):
        k = params.get("k", 60.0)
        return ReciprocalRankFusion(k=k)

    elif algorithm == FusionMethod.WEIGHTED.value:
        return WeightedScoreFusion()

    else:
        raise ValueError(f"Unknown fusion algorithm: {algorithm}")
