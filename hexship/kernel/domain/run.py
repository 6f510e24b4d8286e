"""Domain model for pipeline runs and their stage results.

A :class:`Run` is owned exclusively by the scheduler while it executes. Every
state change is appended to the run history through
:class:`~hexship.stdlib.lib.run_registry.RunRegistry`, so the latest snapshot
can be rebuilt after a process restart.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any

from hexship.kernel.utils.timer import utcnow

# Failed-stage error types meaning the environment was reverted
ROLLBACK_ERROR_TYPES = frozenset(
    {
        "DeploymentHealthCheckFailure",
        "RollbackFailure",
        "RolloutAbortedError",
        "RolloutInterrupted",
    }
)


class RunStatus(StrEnum):
    """Lifecycle status of a run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class StageStatus(StrEnum):
    """Lifecycle status of one stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class ExitCode(IntEnum):
    """CLI exit codes derived from a run outcome."""

    SUCCESS = 0
    STAGE_FAILURE = 1
    GATE_FAILURE = 2
    TIMEOUT = 3
    ROLLBACK = 4


@dataclass(frozen=True, slots=True)
class TriggerContext:
    """The change a run was created for."""

    repository: str
    branch: str
    change_ref: str

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.repository, self.branch, self.change_ref)

    @property
    def lane(self) -> tuple[str, str]:
        """FIFO admission key: runs for the same repository and branch never overlap."""
        return (self.repository, self.branch)


@dataclass(slots=True)
class StageResult:
    """Outcome of one stage; ``output_ref`` is an opaque handle to logs/metrics.

    ``rolled_back`` is set on a deploy stage whose rollout was reverted, whatever
    error ended the stage (a timeout arrives as ``StageTimeoutError``).
    """

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    output_ref: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    skip_reason: str | None = None
    rolled_back: bool = False


@dataclass(slots=True)
class Run:
    """One end-to-end execution of a pipeline definition."""

    pipeline_name: str
    trigger: TriggerContext
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.RUNNING
    stages: dict[str, StageResult] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    gate_verdict: str | None = None
    artifact_version: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_stages(
        cls, pipeline_name: str, trigger: TriggerContext, stage_ids: list[str], **kwargs: Any
    ) -> Run:
        run = cls(pipeline_name=pipeline_name, trigger=trigger, **kwargs)
        run.stages = {stage_id: StageResult(stage_id=stage_id) for stage_id in stage_ids}
        return run

    def result(self, stage_id: str) -> StageResult:
        return self.stages[stage_id]

    def stage_ids_with(self, *statuses: StageStatus) -> list[str]:
        return [sid for sid, result in self.stages.items() if result.status in statuses]

    @property
    def active(self) -> bool:
        """True while any stage is pending, running or waiting to retry."""
        return any(not result.status.terminal for result in self.stages.values())

    def exit_code(self) -> int:
        """Map the run outcome to a CLI exit code.

        Precedence when several stages failed: rollback, timeout, gate, generic.
        """
        if self.status == RunStatus.SUCCEEDED:
            return ExitCode.SUCCESS
        failed = [r for r in self.stages.values() if r.status == StageStatus.FAILED]
        error_types = {r.error_type for r in failed}
        if error_types & ROLLBACK_ERROR_TYPES or any(r.rolled_back for r in failed):
            return ExitCode.ROLLBACK
        if "StageTimeoutError" in error_types:
            return ExitCode.TIMEOUT
        gate_blocked = self.gate_verdict == "fail" and not error_types
        if "QualityGateFailure" in error_types or gate_blocked:
            return ExitCode.GATE_FAILURE
        return ExitCode.STAGE_FAILURE


# ----------------------------------------------------------------------
# Storage serialisation
# ----------------------------------------------------------------------


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def stage_result_to_storage(result: StageResult) -> dict[str, Any]:
    return {
        "stage_id": result.stage_id,
        "status": str(result.status),
        "attempts": result.attempts,
        "output_ref": result.output_ref,
        "started_at": _dt(result.started_at),
        "ended_at": _dt(result.ended_at),
        "error": result.error,
        "error_type": result.error_type,
        "skip_reason": result.skip_reason,
        "rolled_back": result.rolled_back,
    }


def stage_result_from_storage(data: dict[str, Any]) -> StageResult:
    return StageResult(
        stage_id=data["stage_id"],
        status=StageStatus(data.get("status", "pending")),
        attempts=data.get("attempts", 0),
        output_ref=data.get("output_ref"),
        started_at=_parse_dt(data.get("started_at")),
        ended_at=_parse_dt(data.get("ended_at")),
        error=data.get("error"),
        error_type=data.get("error_type"),
        skip_reason=data.get("skip_reason"),
        rolled_back=bool(data.get("rolled_back", False)),
    )


def run_to_storage(run: Run) -> dict[str, Any]:
    """Serialise a Run to a JSON-compatible document."""
    return {
        "run_id": run.run_id,
        "pipeline_name": run.pipeline_name,
        "repository": run.trigger.repository,
        "branch": run.trigger.branch,
        "change_ref": run.trigger.change_ref,
        "status": str(run.status),
        "stages": {sid: stage_result_to_storage(r) for sid, r in run.stages.items()},
        "created_at": _dt(run.created_at),
        "started_at": _dt(run.started_at),
        "completed_at": _dt(run.completed_at),
        "gate_verdict": run.gate_verdict,
        "artifact_version": run.artifact_version,
        "error": run.error,
        "metadata": run.metadata,
    }


def run_from_storage(data: dict[str, Any]) -> Run:
    """Rebuild a Run from a storage document."""
    return Run(
        run_id=data["run_id"],
        pipeline_name=data["pipeline_name"],
        trigger=TriggerContext(
            repository=data["repository"],
            branch=data["branch"],
            change_ref=data["change_ref"],
        ),
        status=RunStatus(data.get("status", "running")),
        stages={
            sid: stage_result_from_storage(doc) for sid, doc in (data.get("stages") or {}).items()
        },
        created_at=_parse_dt(data.get("created_at")) or utcnow(),
        started_at=_parse_dt(data.get("started_at")),
        completed_at=_parse_dt(data.get("completed_at")),
        gate_verdict=data.get("gate_verdict"),
        artifact_version=data.get("artifact_version"),
        error=data.get("error"),
        metadata=dict(data.get("metadata") or {}),
    )
