"""API routes for the hexship server."""

from hexship.server.routes.environments import router as environments_router
from hexship.server.routes.runs import router as runs_router
from hexship.server.routes.triggers import router as triggers_router

__all__ = [
    "environments_router",
    "runs_router",
    "triggers_router",
]
