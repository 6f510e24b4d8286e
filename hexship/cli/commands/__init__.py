"""CLI command modules."""

from . import run_cmd, runs_cmd, serve_cmd, validate_cmd

__all__ = [
    "run_cmd",
    "runs_cmd",
    "serve_cmd",
    "validate_cmd",
]
