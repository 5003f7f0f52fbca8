"""Runtime side effects of the search service (search log sinks)."""
