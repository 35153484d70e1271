"""Contact extraction strategies and candidate merging."""
