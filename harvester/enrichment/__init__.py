"""External enrichment capabilities: geocoding and text embeddings."""
