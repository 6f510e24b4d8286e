"""Process API - status queries and manual control over a running engine.

Every function takes the :class:`~hexship.kernel.engine.PipelineEngine` and
returns JSON-ready dicts. The FastAPI server and the CLI both call these.

Server usage::

    from hexship.api import processes

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str):
        return await processes.get_run(engine, run_id)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from hexship.kernel.domain.artifact import artifact_to_storage
from hexship.kernel.domain.deployment import deployment_to_storage
from hexship.kernel.domain.gate import bypass_to_storage
from hexship.kernel.domain.run import run_to_storage
from hexship.kernel.domain.trigger import TriggerNotification
from hexship.kernel.exceptions import ResourceNotFoundError

if TYPE_CHECKING:
    from hexship.kernel.domain.artifact import Artifact
    from hexship.kernel.domain.deployment import Deployment
    from hexship.kernel.domain.gate import GateDecision
    from hexship.kernel.domain.run import Run
    from hexship.kernel.engine import PipelineEngine


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def run_summary(run: Run) -> dict[str, Any]:
    """Compact run dict for listings."""
    return {
        "run_id": run.run_id,
        "pipeline_name": run.pipeline_name,
        "repository": run.trigger.repository,
        "branch": run.trigger.branch,
        "change_ref": run.trigger.change_ref,
        "status": str(run.status),
        "created_at": run.created_at.isoformat(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "exit_code": int(run.exit_code()) if run.status.terminal else None,
    }


def run_detail(run: Run) -> dict[str, Any]:
    """Full run dict including per-stage results."""
    detail = run_to_storage(run)
    detail["exit_code"] = int(run.exit_code()) if run.status.terminal else None
    return detail


def artifact_detail(artifact: Artifact) -> dict[str, Any]:
    return artifact_to_storage(artifact)


def deployment_detail(deployment: Deployment) -> dict[str, Any]:
    detail = deployment_to_storage(deployment)
    detail["in_flight"] = deployment.state.in_flight
    return detail


def decision_detail(decision: GateDecision) -> dict[str, Any]:
    return {
        "run_id": decision.run_id,
        "verdict": str(decision.verdict),
        "failed_conditions": decision.failed_conditions,
        "metrics": decision.metrics,
        "overridden": decision.overridden,
        "bypass": bypass_to_storage(decision.bypass) if decision.bypass else None,
    }


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


async def submit_trigger(
    engine: PipelineEngine,
    *,
    repository: str,
    branch: str,
    change_ref: str,
    signature: str = "",
    pipeline: str | None = None,
) -> dict[str, Any]:
    """Ingest a change notification.

    Returns
    -------
        Dict with ``run_id``, ``duplicate`` and the HTTP ``status_code``.

    Raises
    ------
    TriggerValidationError
        On a bad signature, a blank field or an unknown pipeline
    TriggerQueueFullError
        If the admission queue is full
    """
    receipt = await engine.submit(
        TriggerNotification(
            repository=repository,
            branch=branch,
            change_ref=change_ref,
            signature=signature,
            pipeline=pipeline,
        )
    )
    return {
        "run_id": receipt.run_id,
        "duplicate": receipt.duplicate,
        "status_code": receipt.status_code,
    }


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def list_runs(
    engine: PipelineEngine,
    *,
    status: str | None = None,
    repository: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """List runs newest first, optionally filtered by status or repository."""
    runs = await engine.list_runs(status=status, limit=limit, repository=repository)
    return [run_summary(run) for run in runs]


async def get_run(engine: PipelineEngine, run_id: str) -> dict[str, Any] | None:
    """Get one run with its stage results and gate decision, or None."""
    try:
        run = await engine.get_run(run_id)
    except ResourceNotFoundError:
        return None
    detail = run_detail(run)
    decision = await engine.gate_decision(run_id)
    detail["gate"] = decision_detail(decision) if decision else None
    return detail


async def get_run_history(engine: PipelineEngine, run_id: str) -> list[dict[str, Any]]:
    """Append-only transition history of a run, oldest first."""
    return await engine.run_history(run_id)


async def cancel_run(
    engine: PipelineEngine, run_id: str, reason: str | None = None
) -> dict[str, Any]:
    """Request cancellation of a queued or executing run."""
    run = await engine.cancel_run(run_id, reason or "cancelled by operator")
    return {"run_id": run.run_id, "status": str(run.status), "cancel_requested": True}


async def override_gate(
    engine: PipelineEngine,
    run_id: str,
    *,
    token: str,
    actor: str,
    reason: str = "",
) -> dict[str, Any]:
    """Bypass a failing gate with an authorized token."""
    decision = await engine.override_gate(run_id, token, actor, reason)
    if decision is None:
        return {"run_id": run_id, "applied": False, "pending": True}
    return {"run_id": run_id, "applied": True, "pending": False, **decision_detail(decision)}


async def audit_log(engine: PipelineEngine, run_id: str | None = None) -> list[dict[str, Any]]:
    """Gate bypass audit entries, oldest first."""
    return [bypass_to_storage(entry) for entry in await engine.audit_log(run_id)]


# ---------------------------------------------------------------------------
# Artifacts & environments
# ---------------------------------------------------------------------------


async def list_artifacts(
    engine: PipelineEngine, *, state: str | None = None
) -> list[dict[str, Any]]:
    return [artifact_detail(a) for a in await engine.list_artifacts(state)]


async def get_environment(engine: PipelineEngine, environment: str) -> dict[str, Any] | None:
    """Rollout record of an environment, or None if nothing was deployed there."""
    try:
        deployment = await engine.get_deployment(environment)
    except ResourceNotFoundError:
        return None
    return deployment_detail(deployment)


async def list_environments(engine: PipelineEngine) -> list[dict[str, Any]]:
    return [deployment_detail(d) for d in await engine.list_deployments()]


async def force_rollback(
    engine: PipelineEngine, environment: str, reason: str | None = None
) -> dict[str, Any]:
    """Revert an environment to its previous version."""
    deployment = await engine.force_rollback(environment, reason or "manual rollback")
    return deployment_detail(deployment)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


async def health(engine: PipelineEngine) -> dict[str, Any]:
    """Liveness summary: engine state, queue depth and registered pipelines."""
    return {
        "status": "ok" if engine.started else "stopped",
        "queue_depth": engine.queue_depth,
        "pipelines": sorted(engine.pipelines),
    }
