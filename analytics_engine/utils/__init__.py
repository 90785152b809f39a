"""Shared helpers for caching and logging."""
