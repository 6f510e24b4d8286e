"""Command-line interface for hexship."""
