"""Runtime primitives: fetch results, retries, rate limiting."""
