"""Command-line interface for kb-search."""
