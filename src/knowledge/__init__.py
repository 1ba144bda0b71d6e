"""Knowledge indexing, embedding retries and retrieval."""
