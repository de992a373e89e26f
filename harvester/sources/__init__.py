"""Per-source reliability: circuit breaker and scrape scheduling."""
