"""Base lexical index store interface.

A lexical store keeps one index entry per fragment (weighted title and body
fields plus the language they were tokenized with) and executes structured
queries against it.

All methods are asynchronous to support high‑throughput services.
"""

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from libs.common.models import RawLexicalHit, SearchFilters

from .query import StructuredQuery
from .tokenizers import TOKEN_PATTERN, TokenizerConfig

# ts_rank default weights for the {D, C, B, A} labels; title is A, body is B.
TITLE_WEIGHT = 1.0
BODY_WEIGHT = 0.4


def rank_completions(texts: Iterable[Optional[str]], prefix: str, limit: int) -> List[str]:
    """Lowercased words of ``texts`` starting with ``prefix``, most frequent first."""
    prefix = prefix.lower()
    counts: Counter = Counter()
    for text in texts:
        for match in TOKEN_PATTERN.finditer(text or ""):
            word = match.group(0).lower()
            if word.startswith(prefix):
                counts[word] += 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [word for word, _ in ranked[:limit]]


@dataclass
class LexicalIndexStats:
    """Summary of the lexical index."""
    indexed_count: int
    languages: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {"indexed_count": self.indexed_count, "languages": dict(self.languages)}


class LexicalStore(ABC):
    """Abstract base class for lexical (full-text) index stores.

    ``query`` must return hits sorted by descending score, ties broken by
    ascending fragment id.
    """

    @abstractmethod
    async def upsert_index(
        self,
        fragment_id: int,
        document_id: int,
        title: Optional[str],
        body: str,
        tokenizer: TokenizerConfig
    ) -> None:
        """Create or replace the index entry of a fragment."""
        pass

    @abstractmethod
    async def delete_index(self, fragment_id: int) -> bool:
        """Remove a fragment's index entry. Returns ``True`` if one existed."""
        pass

    @abstractmethod
    async def delete_orphaned(self) -> int:
        """Remove entries whose fragment no longer exists. Returns the count."""
        pass

    @abstractmethod
    async def query(
        self,
        structured_query: StructuredQuery,
        tokenizer: TokenizerConfig,
        k: int,
        filters: Optional[SearchFilters] = None,
        highlight: bool = True
    ) -> List[RawLexicalHit]:
        """Execute a structured query and return up to ``k`` hits.

        Raises ``SearchBackendError`` when the store is unavailable.
        """
        pass

    @abstractmethod
    async def suggest(self, prefix: str, language: Optional[str], limit: int) -> List[str]:
        """Indexed words starting with ``prefix``, most frequent first.

        ``language`` restricts the lookup to entries indexed with that
        tokenizer language; ``None`` searches all of them.
        """
        pass

    @abstractmethod
    async def stats(self) -> LexicalIndexStats:
        pass

    async def health_check(self) -> bool:
        return True
