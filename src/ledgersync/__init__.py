"""Bank feed sync and deduplication engine."""
