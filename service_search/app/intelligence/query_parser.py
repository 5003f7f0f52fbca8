"""Language detection and structured query construction."""

import re
from typing import List, Optional, Tuple, Union

import structlog

from libs.common.errors import ValidationError
from libs.lexical_store.query import (
    AndNode,
    NotNode,
    OrNode,
    PhraseNode,
    QueryKind,
    QueryNode,
    StructuredQuery,
    TermNode,
    fold_or,
)
from libs.lexical_store.tokenizers import DEFAULT_LANGUAGE

logger = structlog.get_logger("query_parser")

# Detection order doubles as the tie-break priority.
SCRIPT_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("zh", re.compile(r"[㐀-䶿一-鿿]")),
    ("ja", re.compile(r"[぀-ゟ゠-ヿ]")),
    ("ko", re.compile(r"[가-힯]")),
    ("en", re.compile(r"[A-Za-z]")),
]

CJK_LANGUAGES = frozenset({"zh", "ja", "ko"})

_OPERATOR_RE = re.compile(r"\b(AND|OR|NOT)\b", re.IGNORECASE)
_SEGMENT_RE = re.compile(r'"(?P<phrase>[^"]*)"|\b(?P<op>AND|OR|NOT)\b', re.IGNORECASE)
_STRAY_RE = re.compile(r'["()]')


def is_cjk_language(language: Optional[str]) -> bool:
    """True for ``zh``/``ja``/``ko`` including regional variants (``zh_cn``)."""
    if not language:
        return False
    return language.strip().lower().replace("-", "_").split("_", 1)[0] in CJK_LANGUAGES


class QueryParser:
    """Turns raw query text into a ``StructuredQuery``.

    Classification
    - Fully quoted text without inner quotes: phrase query
    - Contains ``AND``/``OR``/``NOT`` (whole words, any case) or a quote: boolean
    - Anything else: plain, an OR-fold of per-term matches
    """

    def detect_language(self, text: Optional[str]) -> str:
        """Return the script with the most characters, or ``default``."""
        if not text or not text.strip():
            return DEFAULT_LANGUAGE

        best_language = DEFAULT_LANGUAGE
        best_count = 0
        for language, pattern in SCRIPT_PATTERNS:
            count = len(pattern.findall(text))
            if count > best_count:
                best_language, best_count = language, count
        return best_language

    def classify(self, text: str) -> QueryKind:
        stripped = text.strip()
        if len(stripped) >= 2 and stripped[0] == '"' and stripped[-1] == '"' and '"' not in stripped[1:-1]:
            return QueryKind.PHRASE
        if _OPERATOR_RE.search(stripped) or '"' in stripped:
            return QueryKind.BOOLEAN
        return QueryKind.PLAIN

    def parse(self, text: Optional[str], language: Optional[str] = None) -> StructuredQuery:
        """Parse ``text`` into a structured query.

        Raises ``ValidationError`` for missing or blank text only; boolean
        input that leaves no operands degrades to a plain query.
        """
        if text is None or not text.strip():
            raise ValidationError("Query text cannot be empty")

        stripped = text.strip()
        language = language or self.detect_language(stripped)
        kind = self.classify(stripped)

        root: Optional[QueryNode] = None
        if kind == QueryKind.PHRASE:
            phrase = " ".join(stripped[1:-1].split())
            if phrase:
                root = PhraseNode(phrase)
            else:
                kind = QueryKind.PLAIN
        elif kind == QueryKind.BOOLEAN:
            root = self._parse_boolean(stripped)
            if root is None:
                logger.debug("Boolean query has no operands, using plain terms", query=stripped)
                kind = QueryKind.PLAIN

        if root is None:
            root = self._parse_plain(self.relax(stripped))

        return StructuredQuery(kind=kind, language=language, original=text, root=root)

    def relax(self, text: str) -> str:
        """Strip quotes, boolean keywords and parentheses.

        Returns the stripped original when nothing would remain.
        """
        relaxed = _STRAY_RE.sub(" ", _OPERATOR_RE.sub(" ", text))
        relaxed = " ".join(relaxed.split())
        return relaxed or text.strip()

    def _parse_plain(self, text: str) -> QueryNode:
        terms = text.split()
        if len(terms) <= 1:
            return TermNode(text.strip())
        return fold_or([TermNode(term) for term in terms])

    def _segments(self, text: str) -> List[Union[str, QueryNode]]:
        """Split into operand nodes and upper-cased operator keywords, in order."""
        segments: List[Union[str, QueryNode]] = []

        def add_text(chunk: str) -> None:
            chunk = " ".join(_STRAY_RE.sub(" ", chunk).split())
            if chunk:
                segments.append(TermNode(chunk))

        cursor = 0
        for match in _SEGMENT_RE.finditer(text):
            add_text(text[cursor:match.start()])
            cursor = match.end()
            if match.group("op"):
                segments.append(match.group("op").upper())
            else:
                phrase = " ".join(match.group("phrase").split())
                if phrase:
                    segments.append(PhraseNode(phrase))
        add_text(text[cursor:])
        return segments

    def _parse_boolean(self, text: str) -> Optional[QueryNode]:
        result: Optional[QueryNode] = None
        pending: Optional[str] = None
        negate = False

        for segment in self._segments(text):
            if segment == "NOT":
                negate = True
                continue
            if isinstance(segment, str):
                # binary operators with no left operand are dropped
                if result is not None:
                    pending = segment
                continue

            node: QueryNode = NotNode(segment) if negate else segment
            negate = False
            if result is None:
                result = node
            elif pending == "OR":
                result = OrNode(result, node)
            else:
                result = AndNode(result, node)
            pending = None

        return result
