"""Run status and run control routes."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from hexship.api import processes
from hexship.kernel.engine import PipelineEngine
from hexship.server.routes.deps import get_engine

router = APIRouter(prefix="/runs", tags=["runs"])


class CancelRequest(BaseModel):
    reason: str | None = None


class GateOverrideRequest(BaseModel):
    """Gate bypass; the token is hashed and never stored in clear."""

    token: str
    actor: str
    reason: str = ""


@router.get("")
async def list_runs(
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    status: str | None = None,
    repository: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[dict[str, Any]]:
    return await processes.list_runs(engine, status=status, repository=repository, limit=limit)


@router.get("/{run_id}")
async def get_run(
    run_id: str, engine: Annotated[PipelineEngine, Depends(get_engine)]
) -> dict[str, Any]:
    """Run state with per-stage results and the gate decision."""
    run = await processes.get_run(engine, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run


@router.get("/{run_id}/history")
async def get_run_history(
    run_id: str, engine: Annotated[PipelineEngine, Depends(get_engine)]
) -> list[dict[str, Any]]:
    return await processes.get_run_history(engine, run_id)


@router.post("/{run_id}/cancel", status_code=202)
async def cancel_run(
    run_id: str,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    request: CancelRequest | None = None,
) -> dict[str, Any]:
    return await processes.cancel_run(engine, run_id, request.reason if request else None)


@router.post("/{run_id}/gate-override")
async def override_gate(
    run_id: str,
    request: GateOverrideRequest,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
) -> dict[str, Any]:
    return await processes.override_gate(
        engine, run_id, token=request.token, actor=request.actor, reason=request.reason
    )


@router.get("/{run_id}/gate-audit")
async def gate_audit(
    run_id: str, engine: Annotated[PipelineEngine, Depends(get_engine)]
) -> list[dict[str, Any]]:
    return await processes.audit_log(engine, run_id)
