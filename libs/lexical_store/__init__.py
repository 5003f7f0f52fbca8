"""Lexical (full-text) index store adapters.

Primary components:
- ``query``: the structured query expression tree shared with the search service.
- ``tokenizers``: per-language tokenizer registry with a generic fallback.
- ``base``: abstract ``LexicalStore`` interface.
- ``memory``: in-memory evaluator for development and tests.
- ``postgres``: PostgreSQL ``tsvector`` implementation.
"""
