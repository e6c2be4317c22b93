"""Shared utilities: structured errors and logging."""
