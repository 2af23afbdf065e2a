"""Core infrastructure: configuration, errors, store adapters, retry and cache."""
