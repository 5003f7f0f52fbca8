"""Tag store adapters.

Tags form a forest (each tag has at most one parent) attached many-to-many
to fragments. The search service only reads them, for filtering and for
tag-boosted reranking.
"""
