"""Search retrievers for the lexical and semantic signals.

Retrievers encapsulate how candidates are fetched from backends (lexical
index, vector store) before ranking. Splitting retrieval from ranking keeps
pipelines modular and testable.
"""
