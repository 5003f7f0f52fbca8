"""Adapters for external services: the embedding client and its resilience helpers."""
