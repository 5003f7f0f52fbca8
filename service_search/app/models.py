"""Search request options and result records."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from libs.common.models import SearchFilters


class SearchMode(Enum):
    HYBRID = "hybrid"
    VECTOR = "vector"
    FULLTEXT = "fulltext"


class FusionMethod(Enum):
    RRF = "rrf"
    WEIGHTED = "weighted"


@dataclass
class SearchOptions:
    """Per-request search options.

    ``None`` values fall back to the service configuration.
    """
    mode: str = SearchMode.HYBRID.value
    limit: Optional[int] = None
    alpha: Optional[float] = None
    rrf_k: Optional[int] = None
    fusion_method: Optional[str] = None
    language: Optional[str] = None
    filters: SearchFilters = field(default_factory=SearchFilters)
    tags: List[int] = field(default_factory=list)
    tag_boost_weight: Optional[float] = None
    threshold: Optional[float] = None
    rerank: bool = True
    include_content: bool = True
    include_metadata: bool = False
    include_explanations: bool = False


@dataclass
class FusedResult:
    """A fragment after fusion, carrying the evidence from both sources."""
    fragment_id: int
    document_id: int
    fusion_score: float
    lexical_score: float = 0.0
    vector_score: float = 0.0
    tag_boost: float = 0.0
    lexical_rank: Optional[int] = None
    vector_rank: Optional[int] = None
    title: Optional[str] = None
    content: Optional[str] = None
    snippet: Optional[str] = None
    matched_tag_ids: Tuple[int, ...] = ()
    contributions: Dict[str, float] = field(default_factory=lambda: {"text": 0.0, "vector": 0.0})


@dataclass
class SearchResult:
    """A ranked result as returned to callers."""
    fragment_id: int
    document_id: int
    lexical_score: float
    vector_score: float
    tag_boost: float
    fusion_score: float
    combined_score: float
    contributions: Dict[str, float]
    title: Optional[str] = None
    content: Optional[str] = None
    snippet: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    explanation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fragment_id": self.fragment_id,
            "document_id": self.document_id,
            "title": self.title,
            "lexical_score": self.lexical_score,
            "vector_score": self.vector_score,
            "tag_boost": self.tag_boost,
            "fusion_score": self.fusion_score,
            "combined_score": self.combined_score,
            "contributions": dict(self.contributions),
        }
        if self.content is not None:
            data["content"] = self.content
        if self.snippet is not None:
            data["snippet"] = self.snippet
        if self.metadata is not None:
            data["metadata"] = self.metadata
        if self.explanation is not None:
            data["explanation"] = self.explanation
        return data


@dataclass
class HybridResult:
    query: str
    results: List[SearchResult]
    metadata: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "results": [result.to_dict() for result in self.results],
            "metadata": self.metadata,
        }
