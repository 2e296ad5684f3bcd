"""Command line interface for licensor."""
