"""Simple event data classes for the hexship event system."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hexship.kernel.utils.timer import utcnow


@dataclass(slots=True)
class Event:
    """Base class for all events - provides timestamp."""

    timestamp: datetime = field(default_factory=utcnow, init=False)

    def log_message(self) -> str:
        """Get a formatted log message for this event.

        Override in subclasses to provide custom formatting.
        """
        return f"{self.__class__.__name__} at {self.timestamp.isoformat()}"


# Run events
@dataclass(slots=True)
class RunQueued(Event):
    """A run was admitted by trigger ingestion."""

    run_id: str
    pipeline_name: str
    repository: str
    branch: str
    change_ref: str

    def log_message(self) -> str:
        return f"Run {self.run_id} queued for {self.repository}@{self.branch} ({self.change_ref})"


@dataclass(slots=True)
class RunStarted(Event):
    """The scheduler started executing a run."""

    run_id: str
    pipeline_name: str
    total_stages: int
    resumed: bool = False

    def log_message(self) -> str:
        verb = "resumed" if self.resumed else "started"
        return (
            f"Run {self.run_id} {verb}: pipeline '{self.pipeline_name}' "
            f"with {self.total_stages} stages"
        )


@dataclass(slots=True)
class RunCompleted(Event):
    """A run reached a terminal status."""

    run_id: str
    status: str
    duration_ms: float
    exit_code: int = 0

    def log_message(self) -> str:
        return (
            f"Run {self.run_id} {self.status} in {self.duration_ms / 1000:.2f}s "
            f"(exit code {self.exit_code})"
        )


@dataclass(slots=True)
class RunCancelled(Event):
    """Cancellation was requested for a run."""

    run_id: str
    reason: str | None = None

    def log_message(self) -> str:
        return f"Run {self.run_id} cancelled: {self.reason or 'no reason given'}"


# Stage events
@dataclass(slots=True)
class StageStarted(Event):
    """A stage was dispatched."""

    run_id: str
    stage_id: str
    attempt: int
    dependencies: tuple[str, ...] = ()

    def log_message(self) -> str:
        deps = f" (deps: {', '.join(self.dependencies)})" if self.dependencies else ""
        return f"Stage '{self.stage_id}' started, attempt {self.attempt}{deps}"


@dataclass(slots=True)
class StageCompleted(Event):
    """A stage succeeded."""

    run_id: str
    stage_id: str
    attempts: int
    duration_ms: float
    output_ref: str | None = None

    def log_message(self) -> str:
        return f"Stage '{self.stage_id}' succeeded in {self.duration_ms / 1000:.2f}s"


@dataclass(slots=True)
class StageRetrying(Event):
    """A stage attempt failed and another one is scheduled."""

    run_id: str
    stage_id: str
    attempt: int
    max_attempts: int
    delay: float
    error: str

    def log_message(self) -> str:
        return (
            f"Stage '{self.stage_id}' attempt {self.attempt}/{self.max_attempts} failed: "
            f"{self.error}; retrying in {self.delay:.2f}s"
        )


@dataclass(slots=True)
class StageFailed(Event):
    """A stage is terminally failed."""

    run_id: str
    stage_id: str
    attempts: int
    error: Exception

    def log_message(self) -> str:
        return f"Stage '{self.stage_id}' failed after {self.attempts} attempt(s): {self.error}"


@dataclass(slots=True)
class StageSkipped(Event):
    """A stage was skipped without execution."""

    run_id: str
    stage_id: str
    reason: str

    def log_message(self) -> str:
        return f"Stage '{self.stage_id}' skipped: {self.reason}"


# Gate events
@dataclass(slots=True)
class GateEvaluated(Event):
    """The quality gate produced a verdict for a run."""

    run_id: str
    verdict: str
    failed_conditions: list[str] = field(default_factory=list)
    overridden: bool = False

    def log_message(self) -> str:
        suffix = " (overridden)" if self.overridden else ""
        failed = f": {', '.join(self.failed_conditions)}" if self.failed_conditions else ""
        return f"Gate verdict for run {self.run_id}: {self.verdict}{suffix}{failed}"


@dataclass(slots=True)
class GateBypassed(Event):
    """An authorized bypass was recorded."""

    run_id: str
    actor: str
    waived_conditions: list[str] = field(default_factory=list)

    def log_message(self) -> str:
        return f"Gate for run {self.run_id} bypassed by {self.actor}"


# Artifact events
@dataclass(slots=True)
class ArtifactRegistered(Event):
    version: str
    run_id: str
    content_ref: str

    def log_message(self) -> str:
        return f"Artifact {self.version} staged from run {self.run_id}"


@dataclass(slots=True)
class ArtifactStateChanged(Event):
    version: str
    from_state: str
    to_state: str

    def log_message(self) -> str:
        return f"Artifact {self.version}: {self.from_state} -> {self.to_state}"


@dataclass(slots=True)
class ArtifactPurged(Event):
    version: str

    def log_message(self) -> str:
        return f"Artifact {self.version} purged by retention"


# Rollout events
@dataclass(slots=True)
class RolloutStepApplied(Event):
    """A canary step was applied to an environment."""

    environment: str
    version: str
    step_index: int
    traffic_percent: float

    def log_message(self) -> str:
        return (
            f"Rollout of {self.version} to '{self.environment}' at "
            f"{self.traffic_percent:g}% (step {self.step_index + 1})"
        )


@dataclass(slots=True)
class RolloutStateChanged(Event):
    environment: str
    from_state: str
    to_state: str
    version: str | None = None

    def log_message(self) -> str:
        return f"Environment '{self.environment}': {self.from_state} -> {self.to_state}"


@dataclass(slots=True)
class RolloutRolledBack(Event):
    """An environment was reverted to its previous version."""

    environment: str
    failed_version: str | None
    restored_version: str | None
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    def log_message(self) -> str:
        return (
            f"Environment '{self.environment}' rolled back from {self.failed_version} "
            f"to {self.restored_version or 'nothing'}: {self.reason}"
        )
