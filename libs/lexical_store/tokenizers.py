"""Per-language tokenizer configurations.

Each configuration turns text into positioned lexemes for the in-memory
index and names the PostgreSQL text-search configuration used by the
``tsvector`` adapter. Scripts written without whitespace boundaries (Han,
Hiragana, Katakana) are shingled into character bigrams so substring
queries still match.

Every language code resolves to a configuration: regional variants
(``en_us``, ``zh-TW``) map to their base language and anything unknown falls
back to the generic ``default`` configuration.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Tuple

DEFAULT_LANGUAGE = "default"

CJK_CHARS = "㐀-䶿一-鿿぀-ゟ゠-ヿ"

TOKEN_PATTERN = re.compile(rf"(?P<cjk>[{CJK_CHARS}]+)|(?P<word>[^\W{CJK_CHARS}]+)")

ENGLISH_STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
    "has", "have", "in", "into", "is", "it", "its", "of", "on", "or", "that",
    "the", "their", "there", "these", "this", "to", "was", "were", "which",
    "will", "with",
})


def cjk_shingles(run: str) -> List[str]:
    """Character bigrams of a CJK run; a single character stays whole."""
    if len(run) <= 1:
        return [run]
    return [run[i:i + 2] for i in range(len(run) - 1)]


def _stem_english(word: str) -> str:
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 3 and word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


@dataclass(frozen=True)
class TokenizerConfig:
    """Tokenization rules for one language."""
    language: str
    pg_config: str
    stopwords: FrozenSet[str] = field(default_factory=frozenset)
    stem: bool = False
    pre_tokenize: bool = False

    def tokenize_with_positions(self, text: str) -> List[Tuple[str, int]]:
        """Return ``(lexeme, position)`` pairs.

        Positions count every produced token, including dropped stopwords,
        so phrase adjacency survives stopword removal.
        """
        if not text:
            return []

        tokens: List[Tuple[str, int]] = []
        position = 0
        for match in TOKEN_PATTERN.finditer(text):
            if match.group("cjk"):
                for shingle in cjk_shingles(match.group("cjk")):
                    tokens.append((shingle, position))
                    position += 1
                continue

            word = match.group("word").lower()
            if word not in self.stopwords:
                tokens.append((_stem_english(word) if self.stem else word, position))
            position += 1
        return tokens

    def tokenize(self, text: str) -> List[str]:
        return [lexeme for lexeme, _ in self.tokenize_with_positions(text)]

    def to_pg_text(self, text: str) -> str:
        """Text handed to PostgreSQL; CJK configurations are shingled here first."""
        if not self.pre_tokenize:
            return text or ""
        return " ".join(self.tokenize(text))


TOKENIZERS: Dict[str, TokenizerConfig] = {
    "en": TokenizerConfig("en", "pg_catalog.english", stopwords=ENGLISH_STOPWORDS, stem=True),
    "zh": TokenizerConfig("zh", "pg_catalog.simple", pre_tokenize=True),
    "ja": TokenizerConfig("ja", "pg_catalog.simple", pre_tokenize=True),
    "ko": TokenizerConfig("ko", "pg_catalog.simple", pre_tokenize=True),
    DEFAULT_LANGUAGE: TokenizerConfig(DEFAULT_LANGUAGE, "pg_catalog.simple", pre_tokenize=True),
}


def normalize_language(language: str) -> str:
    """Resolve a language code to a key of ``TOKENIZERS``."""
    if not language:
        return DEFAULT_LANGUAGE

    code = language.strip().lower().replace("-", "_")
    if code in TOKENIZERS:
        return code

    base = code.split("_", 1)[0]
    if base in TOKENIZERS:
        return base
    return DEFAULT_LANGUAGE


def resolve_tokenizer(language: str) -> TokenizerConfig:
    return TOKENIZERS[normalize_language(language)]
