"""Highlighted snippet construction for lexical hits."""

from typing import List, Set

from .tokenizers import TOKEN_PATTERN, TokenizerConfig, cjk_shingles

MARK_START = "<mark>"
MARK_END = "</mark>"

SNIPPET_MAX_WORDS = 50
SNIPPET_LEAD_WORDS = 10


def mark_snippet(text: str, terms: Set[str], tokenizer: TokenizerConfig) -> str:
    """Wrap tokens of ``text`` whose lexeme is in ``terms`` in ``<mark>`` tags.

    The result is trimmed to a window of ``SNIPPET_MAX_WORDS`` words starting
    shortly before the first highlight.
    """
    if not text:
        return ""

    parts: List[str] = []
    cursor = 0
    for match in TOKEN_PATTERN.finditer(text):
        parts.append(text[cursor:match.start()])
        cursor = match.end()

        if match.group("word"):
            lexemes = tokenizer.tokenize(match.group("word"))
            if lexemes and lexemes[0] in terms:
                parts.append(f"{MARK_START}{match.group('word')}{MARK_END}")
            else:
                parts.append(match.group("word"))
            continue

        run = match.group("cjk")
        marked = [False] * len(run)
        for i, shingle in enumerate(cjk_shingles(run)):
            if shingle in terms:
                for j in range(i, i + len(shingle)):
                    marked[j] = True
        i = 0
        while i < len(run):
            j = i
            while j < len(run) and marked[j] == marked[i]:
                j += 1
            parts.append(f"{MARK_START}{run[i:j]}{MARK_END}" if marked[i] else run[i:j])
            i = j
    parts.append(text[cursor:])

    words = "".join(parts).split()
    if len(words) <= SNIPPET_MAX_WORDS:
        return " ".join(words)

    first_mark = next((i for i, word in enumerate(words) if MARK_START in word), 0)
    start = max(0, first_mark - SNIPPET_LEAD_WORDS)
    return " ".join(words[start:start + SNIPPET_MAX_WORDS])
