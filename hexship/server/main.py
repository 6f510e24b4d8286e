"""FastAPI server for hexship.

The application owns the engine's lifecycle: the engine starts (recovering
interrupted work) when the server starts and stops with it.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hexship.api import processes
from hexship.kernel.engine import PipelineEngine
from hexship.kernel.exceptions import (
    GateOverrideError,
    HexShipError,
    InvalidTransitionError,
    ResourceNotFoundError,
    RollbackFailure,
    RolloutInProgressError,
    TriggerQueueFullError,
    TriggerValidationError,
    ValidationError,
)
from hexship.kernel.logging import get_logger
from hexship.server.routes import environments_router, runs_router, triggers_router

logger = get_logger(__name__)

# Most specific first; the first match wins
_STATUS_CODES: tuple[tuple[type[HexShipError], int], ...] = (
    (TriggerValidationError, 400),
    (ValidationError, 400),
    (GateOverrideError, 403),
    (ResourceNotFoundError, 404),
    (RolloutInProgressError, 409),
    (InvalidTransitionError, 409),
    (RollbackFailure, 502),
    (TriggerQueueFullError, 503),
)


def status_code_for(error: HexShipError) -> int:
    """HTTP status for a hexship error; unknown errors are ``500``."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(engine: PipelineEngine, *, manage_engine: bool = True) -> FastAPI:
    """Create the FastAPI application around *engine*.

    Args:
        engine: The engine serving requests
        manage_engine: Start and stop the engine with the application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if manage_engine:
            await engine.start()
        try:
            yield
        finally:
            if manage_engine:
                await engine.stop()

    app = FastAPI(
        title="hexship",
        description="Pipeline orchestration core: triggers, runs, gates and rollouts",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.exception_handler(HexShipError)
    async def hexship_error_handler(request: Request, exc: HexShipError) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(
                "{method} {path} failed: {error}",
                method=request.method,
                path=request.url.path,
                error=exc,
            )
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    app.include_router(triggers_router, prefix="/api")
    app.include_router(runs_router, prefix="/api")
    app.include_router(environments_router, prefix="/api")

    @app.get("/api/health")
    async def health() -> dict[str, object]:
        return await processes.health(engine)

    return app


def run_server(engine: PipelineEngine, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run the hexship server.

    Args:
        engine: The engine serving requests
        host: Host to bind to
        port: Port to bind to
    """
    import uvicorn

    app = create_app(engine)
    uvicorn.run(app, host=host, port=port, log_level="info")
