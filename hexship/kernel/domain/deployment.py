"""Per-environment deployment state machine.

Success path::

    Idle ─▶ RolloutInProgress ─▶ Healthy

Failure path::

    RolloutInProgress ─▶ RollingBack ─▶ Idle

``Healthy`` environments accept the next rollout or a manual rollback.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from hexship.kernel.exceptions import InvalidTransitionError
from hexship.kernel.utils.timer import utcnow

DEFAULT_HISTORY_WINDOW = 50


class RolloutState(StrEnum):
    IDLE = "Idle"
    ROLLOUT_IN_PROGRESS = "RolloutInProgress"
    HEALTHY = "Healthy"
    ROLLING_BACK = "RollingBack"

    @property
    def in_flight(self) -> bool:
        return self in (RolloutState.ROLLOUT_IN_PROGRESS, RolloutState.ROLLING_BACK)


ROLLOUT_TRANSITIONS: dict[RolloutState, frozenset[RolloutState]] = {
    RolloutState.IDLE: frozenset({RolloutState.ROLLOUT_IN_PROGRESS, RolloutState.ROLLING_BACK}),
    RolloutState.ROLLOUT_IN_PROGRESS: frozenset(
        {RolloutState.HEALTHY, RolloutState.ROLLING_BACK}
    ),
    RolloutState.HEALTHY: frozenset(
        {RolloutState.ROLLOUT_IN_PROGRESS, RolloutState.ROLLING_BACK}
    ),
    RolloutState.ROLLING_BACK: frozenset({RolloutState.IDLE}),
}


@dataclass(frozen=True, slots=True)
class HealthSample:
    """One health observation from the deployment target."""

    error_rate: float
    probe_ok: bool = True
    observed_at: datetime = field(default_factory=utcnow)

    @property
    def failure(self) -> float:
        """Contribution to the window failure rate; a failed probe counts as total failure."""
        return 1.0 if not self.probe_ok else min(max(self.error_rate, 0.0), 1.0)


@dataclass(slots=True)
class Deployment:
    """Rollout record for one environment, persisted for crash recovery."""

    environment: str
    state: RolloutState = RolloutState.IDLE
    current_version: str | None = None
    previous_version: str | None = None
    target_version: str | None = None
    run_id: str | None = None
    step_index: int | None = None
    traffic_percent: float | None = None
    history: deque[HealthSample] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_HISTORY_WINDOW)
    )
    updated_at: datetime = field(default_factory=utcnow)

    def transition(self, to_state: RolloutState) -> None:
        """Move to *to_state*, enforcing the state machine.

        Raises
        ------
        InvalidTransitionError
            If the move is not allowed from the current state
        """
        if to_state not in ROLLOUT_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Environment '{self.environment}' cannot move from {self.state} to {to_state}"
            )
        self.state = to_state
        self.updated_at = utcnow()


def deployment_to_storage(deployment: Deployment) -> dict[str, Any]:
    return {
        "environment": deployment.environment,
        "state": str(deployment.state),
        "current_version": deployment.current_version,
        "previous_version": deployment.previous_version,
        "target_version": deployment.target_version,
        "run_id": deployment.run_id,
        "step_index": deployment.step_index,
        "traffic_percent": deployment.traffic_percent,
        "history": [
            {
                "error_rate": s.error_rate,
                "probe_ok": s.probe_ok,
                "observed_at": s.observed_at.isoformat(),
            }
            for s in deployment.history
        ],
        "updated_at": deployment.updated_at.isoformat(),
    }


def deployment_from_storage(data: dict[str, Any]) -> Deployment:
    history: deque[HealthSample] = deque(maxlen=DEFAULT_HISTORY_WINDOW)
    history.extend(
        HealthSample(
            error_rate=s["error_rate"],
            probe_ok=s["probe_ok"],
            observed_at=datetime.fromisoformat(s["observed_at"]),
        )
        for s in data.get("history") or []
    )
    return Deployment(
        environment=data["environment"],
        state=RolloutState(data["state"]),
        current_version=data.get("current_version"),
        previous_version=data.get("previous_version"),
        target_version=data.get("target_version"),
        run_id=data.get("run_id"),
        step_index=data.get("step_index"),
        traffic_percent=data.get("traffic_percent"),
        history=history,
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )
