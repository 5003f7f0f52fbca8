"""Structured query expression tree.

Queries are parsed once by the search service and handed to a lexical store,
which either evaluates them directly (in-memory) or compiles them to a
``tsquery`` expression (PostgreSQL).

Node semantics
- ``TermNode``: every word of ``text`` must occur (like ``plainto_tsquery``)
- ``PhraseNode``: the words of ``text`` must occur adjacently, in order
- ``AndNode`` / ``OrNode``: boolean combination of two sub-expressions
- ``NotNode``: the operand must not match
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Union


class QueryKind(Enum):
    """How the raw query text was classified."""
    PLAIN = "plain"
    PHRASE = "phrase"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class TermNode:
    text: str


@dataclass(frozen=True)
class PhraseNode:
    text: str


@dataclass(frozen=True)
class AndNode:
    left: "QueryNode"
    right: "QueryNode"


@dataclass(frozen=True)
class OrNode:
    left: "QueryNode"
    right: "QueryNode"


@dataclass(frozen=True)
class NotNode:
    operand: "QueryNode"


QueryNode = Union[TermNode, PhraseNode, AndNode, OrNode, NotNode]


@dataclass(frozen=True)
class StructuredQuery:
    """A parsed query: classification, language, original text, and tree."""
    kind: QueryKind
    language: str
    original: str
    root: QueryNode

    def positive_texts(self) -> List[str]:
        """Texts of term/phrase leaves not under a ``NOT`` (highlighting and rerank)."""
        return [leaf.text for leaf in iter_leaves(self.root, include_negated=False)]


def iter_leaves(node: QueryNode, include_negated: bool = True) -> Iterator[Union[TermNode, PhraseNode]]:
    if isinstance(node, (TermNode, PhraseNode)):
        yield node
    elif isinstance(node, (AndNode, OrNode)):
        yield from iter_leaves(node.left, include_negated)
        yield from iter_leaves(node.right, include_negated)
    elif isinstance(node, NotNode):
        if include_negated:
            yield from iter_leaves(node.operand, include_negated)
    else:
        raise TypeError(f"Unknown query node: {type(node).__name__}")


def fold_or(nodes: List[QueryNode]) -> QueryNode:
    """Left-fold a non-empty list of nodes into an ``OrNode`` chain."""
    result = nodes[0]
    for node in nodes[1:]:
        result = OrNode(result, node)
    return result
