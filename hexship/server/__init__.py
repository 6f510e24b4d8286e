"""HTTP service for hexship: trigger endpoint, status queries and manual control."""

from hexship.server.main import create_app, run_server

__all__ = ["create_app", "run_server"]
