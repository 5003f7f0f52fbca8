"""Domain records shared by the store adapters and the search service.

Fragments are owned by ingestion and are read-only here. The raw hit types
are the per-source stage structs handed from each engine to fusion.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Fragment:
    """A retrievable content unit (one section of a source document)."""
    id: int
    document_id: int
    content: str
    title: Optional[str] = None
    language: str = "en"
    position: int = 0
    created_at: Optional[datetime] = None
    document_title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchFilters:
    """Post-filter constraints shared by both engines.

    ``None`` means "no constraint"; an empty collection matches nothing.
    """
    document_ids: Optional[FrozenSet[int]] = None
    tag_ids: Optional[FrozenSet[int]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    model: Optional[str] = None

    @classmethod
    def create(
        cls,
        document_ids: Optional[Sequence[int]] = None,
        tag_ids: Optional[Sequence[int]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        model: Optional[str] = None,
    ) -> "SearchFilters":
        return cls(
            document_ids=frozenset(document_ids) if document_ids is not None else None,
            tag_ids=frozenset(tag_ids) if tag_ids is not None else None,
            date_from=date_from,
            date_to=date_to,
            model=model,
        )

    @property
    def is_empty(self) -> bool:
        return (
            self.document_ids is None
            and self.tag_ids is None
            and self.date_from is None
            and self.date_to is None
            and self.model is None
        )

    def accepts_date(self, created_at: Optional[datetime]) -> bool:
        if self.date_from is None and self.date_to is None:
            return True
        if created_at is None:
            return False
        if self.date_from is not None and created_at < self.date_from:
            return False
        if self.date_to is not None and created_at > self.date_to:
            return False
        return True


@dataclass(frozen=True)
class RawLexicalHit:
    """A full-text match as returned by a lexical store."""
    fragment_id: int
    document_id: int
    score: float
    language: str
    title: Optional[str] = None
    content: Optional[str] = None
    snippet: Optional[str] = None


@dataclass(frozen=True)
class RawVectorHit:
    """A nearest-neighbour match resolved to its fragment.

    ``score`` is the (possibly tag-boosted) ranking score; ``similarity`` is
    the raw cosine similarity. ``tag_boost`` is their difference.
    """
    fragment_id: int
    document_id: int
    similarity: float
    score: float
    title: Optional[str] = None
    content: Optional[str] = None
    model: Optional[str] = None
    tag_boost: float = 0.0
    matched_tag_ids: Tuple[int, ...] = ()
