"""Knowledge-base hybrid search service."""
