"""Query understanding: language detection and structured query parsing."""
