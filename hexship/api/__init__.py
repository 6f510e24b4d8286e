"""Unified API layer for hexship.

The HTTP server and the CLI consume the same functions, so both surfaces
report runs, artifacts and environments identically.

Available submodules
--------------------
- processes: run admission, status queries and manual control
"""

from hexship.api import processes

__all__ = ["processes"]
