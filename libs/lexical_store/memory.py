"""In-memory lexical store.

Evaluates structured queries directly against positioned token lists. Scores
follow the shape of PostgreSQL ``ts_rank`` without length normalization:
each matched lexeme occurrence counts ``TITLE_WEIGHT`` in the title and
``BODY_WEIGHT`` in the body. Used for local development and tests.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import structlog

from libs.common.models import RawLexicalHit, SearchFilters
from libs.fragment_store.base import FragmentRepository
from libs.tag_store.base import TagStore

from .base import BODY_WEIGHT, TITLE_WEIGHT, LexicalIndexStats, LexicalStore, rank_completions
from .query import AndNode, NotNode, OrNode, PhraseNode, QueryNode, StructuredQuery, TermNode
from .snippets import mark_snippet
from .tokenizers import TokenizerConfig

logger = structlog.get_logger("lexical_store.memory")

Positions = List[Tuple[str, int]]


@dataclass
class _IndexEntry:
    fragment_id: int
    document_id: int
    language: str
    title: str
    body: str
    title_tokens: Positions
    body_tokens: Positions
    title_counts: Counter = field(default_factory=Counter)
    body_counts: Counter = field(default_factory=Counter)


def _phrase_occurrences(phrase: Positions, tokens: Positions) -> int:
    """Count start positions where the phrase lexemes appear with the same spacing."""
    by_lexeme: Dict[str, Set[int]] = defaultdict(set)
    for lexeme, position in tokens:
        by_lexeme[lexeme].add(position)

    first_lexeme, first_position = phrase[0]
    offsets = [(lexeme, position - first_position) for lexeme, position in phrase]
    return sum(
        1
        for start in by_lexeme.get(first_lexeme, ())
        if all(start + offset in by_lexeme.get(lexeme, ()) for lexeme, offset in offsets)
    )


class InMemoryLexicalStore(LexicalStore):
    """Lexical index held in a dict keyed by fragment id.

    The fragment repository (creation dates, orphan detection) and tag store
    (tag filters) are optional; filters they would serve match nothing when
    they are absent.
    """

    def __init__(
        self,
        fragments: Optional[FragmentRepository] = None,
        tags: Optional[TagStore] = None
    ):
        self.fragments = fragments
        self.tags = tags
        self._entries: Dict[int, _IndexEntry] = {}

    async def upsert_index(
        self,
        fragment_id: int,
        document_id: int,
        title: Optional[str],
        body: str,
        tokenizer: TokenizerConfig
    ) -> None:
        title_tokens = tokenizer.tokenize_with_positions(title or "")
        body_tokens = tokenizer.tokenize_with_positions(body or "")
        self._entries[fragment_id] = _IndexEntry(
            fragment_id=fragment_id,
            document_id=document_id,
            language=tokenizer.language,
            title=title or "",
            body=body or "",
            title_tokens=title_tokens,
            body_tokens=body_tokens,
            title_counts=Counter(lexeme for lexeme, _ in title_tokens),
            body_counts=Counter(lexeme for lexeme, _ in body_tokens),
        )

    async def delete_index(self, fragment_id: int) -> bool:
        return self._entries.pop(fragment_id, None) is not None

    async def delete_orphaned(self) -> int:
        if self.fragments is None:
            return 0
        existing = await self.fragments.exists_many(list(self._entries))
        orphaned = [fragment_id for fragment_id in self._entries if fragment_id not in existing]
        for fragment_id in orphaned:
            del self._entries[fragment_id]
        return len(orphaned)

    def _score(self, node: QueryNode, entry: _IndexEntry, tokenizer: TokenizerConfig) -> Optional[float]:
        """Score ``node`` against an entry; ``None`` means no match."""
        if isinstance(node, TermNode):
            lexemes = tokenizer.tokenize(node.text)
            if not lexemes:
                return None
            score = 0.0
            for lexeme in lexemes:
                weight = TITLE_WEIGHT * entry.title_counts[lexeme] + BODY_WEIGHT * entry.body_counts[lexeme]
                if weight == 0:
                    return None
                score += weight
            return score

        if isinstance(node, PhraseNode):
            phrase = tokenizer.tokenize_with_positions(node.text)
            if not phrase:
                return None
            occurrences = (
                TITLE_WEIGHT * _phrase_occurrences(phrase, entry.title_tokens)
                + BODY_WEIGHT * _phrase_occurrences(phrase, entry.body_tokens)
            )
            return occurrences * len(phrase) if occurrences else None

        if isinstance(node, AndNode):
            left = self._score(node.left, entry, tokenizer)
            if left is None:
                return None
            right = self._score(node.right, entry, tokenizer)
            return None if right is None else left + right

        if isinstance(node, OrNode):
            scores = [
                s for s in (self._score(node.left, entry, tokenizer), self._score(node.right, entry, tokenizer))
                if s is not None
            ]
            return sum(scores) if scores else None

        if isinstance(node, NotNode):
            return 0.0 if self._score(node.operand, entry, tokenizer) is None else None

        raise TypeError(f"Unknown query node: {type(node).__name__}")

    async def _filter(self, entries: Sequence[_IndexEntry], filters: SearchFilters) -> List[_IndexEntry]:
        if filters.document_ids is not None:
            entries = [e for e in entries if e.document_id in filters.document_ids]

        if filters.tag_ids is not None:
            tagged = await self.tags.fragments_with_tags(filters.tag_ids) if self.tags else set()
            entries = [e for e in entries if e.fragment_id in tagged]

        if filters.date_from is not None or filters.date_to is not None:
            fragments = (
                await self.fragments.get_many([e.fragment_id for e in entries]) if self.fragments else {}
            )
            entries = [
                e for e in entries
                if e.fragment_id in fragments and filters.accepts_date(fragments[e.fragment_id].created_at)
            ]

        return list(entries)

    async def query(
        self,
        structured_query: StructuredQuery,
        tokenizer: TokenizerConfig,
        k: int,
        filters: Optional[SearchFilters] = None,
        highlight: bool = True
    ) -> List[RawLexicalHit]:
        scored: List[Tuple[float, _IndexEntry]] = []
        for entry in self._entries.values():
            score = self._score(structured_query.root, entry, tokenizer)
            if score is not None:
                scored.append((score, entry))

        if filters is not None and not filters.is_empty:
            allowed = {e.fragment_id for e in await self._filter([e for _, e in scored], filters)}
            scored = [(s, e) for s, e in scored if e.fragment_id in allowed]

        scored.sort(key=lambda item: (-item[0], item[1].fragment_id))

        terms: Set[str] = set()
        if highlight:
            for text in structured_query.positive_texts():
                terms.update(tokenizer.tokenize(text))

        hits = [
            RawLexicalHit(
                fragment_id=entry.fragment_id,
                document_id=entry.document_id,
                score=score,
                language=entry.language,
                title=entry.title or None,
                content=entry.body,
                snippet=mark_snippet(entry.body, terms, tokenizer) if highlight else None,
            )
            for score, entry in scored[:k]
        ]
        logger.debug("In-memory lexical query completed", results_count=len(hits), k=k)
        return hits

    async def suggest(self, prefix: str, language: Optional[str], limit: int) -> List[str]:
        entries = [
            entry for entry in self._entries.values()
            if language is None or entry.language == language
        ]
        texts = [text for entry in entries for text in (entry.title, entry.body)]
        return rank_completions(texts, prefix, limit)

    async def stats(self) -> LexicalIndexStats:
        languages = Counter(entry.language for entry in self._entries.values())
        return LexicalIndexStats(indexed_count=len(self._entries), languages=dict(languages))

    def __len__(self) -> int:
        return len(self._entries)
