"""Command-line interface for Gatekeeper."""
