"""Artifact and environment routes, including forced rollback."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from hexship.api import processes
from hexship.kernel.engine import PipelineEngine
from hexship.server.routes.deps import get_engine

router = APIRouter(tags=["environments"])


class RollbackRequest(BaseModel):
    reason: str | None = None


@router.get("/artifacts")
async def list_artifacts(
    engine: Annotated[PipelineEngine, Depends(get_engine)], state: str | None = None
) -> list[dict[str, Any]]:
    return await processes.list_artifacts(engine, state=state)


@router.get("/environments")
async def list_environments(
    engine: Annotated[PipelineEngine, Depends(get_engine)],
) -> list[dict[str, Any]]:
    return await processes.list_environments(engine)


@router.get("/environments/{environment}")
async def get_environment(
    environment: str, engine: Annotated[PipelineEngine, Depends(get_engine)]
) -> dict[str, Any]:
    deployment = await processes.get_environment(engine, environment)
    if deployment is None:
        raise HTTPException(
            status_code=404, detail=f"Nothing was deployed to environment '{environment}'"
        )
    return deployment


@router.post("/environments/{environment}/rollback")
async def force_rollback(
    environment: str,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    request: RollbackRequest | None = None,
) -> dict[str, Any]:
    return await processes.force_rollback(
        engine, environment, request.reason if request else None
    )
