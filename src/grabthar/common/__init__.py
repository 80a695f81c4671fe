"""Shared helpers: HTTP, logging, caching, memoization and filesystem."""
