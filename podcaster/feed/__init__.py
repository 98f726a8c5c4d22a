"""Feed rendering, caching and invalidation."""
