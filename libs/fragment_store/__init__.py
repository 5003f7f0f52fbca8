"""Fragment repository adapters (read-only access to ingested sections)."""
