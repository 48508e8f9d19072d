"""Command-line interface for jobflow."""
