"""Secondary rerank by query/fragment token overlap."""

import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from libs.lexical_store.tokenizers import CJK_CHARS

from ..models import FusedResult

logger = structlog.get_logger("search_rerank")

_RERANK_TOKEN_RE = re.compile(rf"[{CJK_CHARS}]+|[A-Za-z0-9_]+")
_CJK_RE = re.compile(rf"[{CJK_CHARS}]")

WHOLE_TOKEN_WEIGHT = 1.0
SHINGLE_WEIGHT = 0.5
TITLE_FACTOR = 2
TAG_FACTOR = 5


def rerank_tokens(text: Optional[str]) -> List[str]:
    """Lowercased Latin words plus CJK runs and, for runs over two characters, their bigrams."""
    if not text:
        return []
    tokens = []
    for chunk in _RERANK_TOKEN_RE.findall(text):
        if _CJK_RE.match(chunk):
            tokens.append(chunk)
            if len(chunk) > 2:
                tokens.extend(chunk[i:i + 2] for i in range(len(chunk) - 1))
        else:
            tokens.append(chunk.lower())
    return tokens


def weighted_query_tokens(text: str) -> List[Tuple[str, float]]:
    """Unique query tokens with their weights (whole tokens 1.0, CJK shingles 0.5)."""
    weights: Dict[str, float] = {}
    for chunk in _RERANK_TOKEN_RE.findall(text or ""):
        if _CJK_RE.match(chunk):
            weights[chunk] = max(weights.get(chunk, 0.0), WHOLE_TOKEN_WEIGHT)
            if len(chunk) > 2:
                for i in range(len(chunk) - 1):
                    weights.setdefault(chunk[i:i + 2], SHINGLE_WEIGHT)
        else:
            weights[chunk.lower()] = WHOLE_TOKEN_WEIGHT
    return list(weights.items())


@dataclass(frozen=True)
class RerankScore:
    token_score: float
    vector_score: float
    rank_feature: float
    token_weight: float
    vector_weight: float
    combined_score: float


class TokenOverlapReranker:
    """Blends token overlap with vector similarity.

    ``combined = (1 - vt) * token + vt * max(similarity, 0) + rank_feature``
    where ``vt`` is the vector weight (alpha), capped for long queries.
    """

    def __init__(
        self,
        long_query_tokens: int = 6,
        long_query_vector_cap: float = 0.2,
        no_overlap_min_tokens: int = 3,
        no_overlap_damping: float = 0.3
    ):
        self.long_query_tokens = long_query_tokens
        self.long_query_vector_cap = long_query_vector_cap
        self.no_overlap_min_tokens = no_overlap_min_tokens
        self.no_overlap_damping = no_overlap_damping

    def token_similarity(
        self,
        query_tokens: Sequence[Tuple[str, float]],
        content: Optional[str],
        title: Optional[str],
        tag_names: Sequence[str]
    ) -> float:
        total_weight = sum(weight for _, weight in query_tokens)
        if total_weight <= 0:
            return 0.0

        counts: Counter = Counter(rerank_tokens(content))
        for token in rerank_tokens(title):
            counts[token] += TITLE_FACTOR
        for name in tag_names:
            counts[name.lower()] += TAG_FACTOR

        hits = sum(weight * counts[token] for token, weight in query_tokens)
        return hits / total_weight

    @staticmethod
    def rank_feature(query_tokens: Sequence[Tuple[str, float]], tag_names: Sequence[str]) -> float:
        tags = {name.lower() for name in tag_names}
        tag_hits = sum(1 for token, _ in query_tokens if token in tags)
        return tag_hits / max(len(query_tokens), 1)

    def rerank(
        self,
        results: Sequence[FusedResult],
        query: str,
        vector_weight: float,
        tag_names: Optional[Mapping[int, Sequence[str]]] = None
    ) -> List[Tuple[FusedResult, RerankScore]]:
        """Score and reorder ``results``; ties break on fragment id."""
        tag_names = tag_names or {}
        query_tokens = weighted_query_tokens(query)

        vt = min(max(vector_weight, 0.0), 1.0)
        if len(query_tokens) >= self.long_query_tokens:
            vt = min(vt, self.long_query_vector_cap)
        tk = 1.0 - vt

        scored = []
        for result in results:
            names = tag_names.get(result.fragment_id, ())
            token_score = self.token_similarity(query_tokens, result.content, result.title, names)
            vector_score = max(result.vector_score, 0.0)
            if token_score <= 0.0 and len(query_tokens) >= self.no_overlap_min_tokens:
                vector_score *= self.no_overlap_damping
            rank_feature = self.rank_feature(query_tokens, names) if token_score > 0 else 0.0
            combined = tk * token_score + vt * vector_score + rank_feature

            scored.append((
                result,
                RerankScore(
                    token_score=token_score,
                    vector_score=vector_score,
                    rank_feature=rank_feature,
                    token_weight=tk,
                    vector_weight=vt,
                    combined_score=combined,
                ),
            ))

        scored.sort(key=lambda item: (-item[1].combined_score, item[0].fragment_id))
        logger.debug(
            "Token overlap rerank completed",
            candidates=len(scored),
            query_tokens=len(query_tokens),
            vector_weight=vt
        )
        return scored
