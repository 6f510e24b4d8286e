"""Artifact promotion lifecycle.

Transitions::

    staged ──promote──▶ released ──supersede──▶ deprecated
      │                    │
      └──────rollback──────┴──▶ rolled_back

A released artifact's content reference never changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from hexship.kernel.exceptions import InvalidTransitionError
from hexship.kernel.utils.timer import utcnow


class ArtifactState(StrEnum):
    STAGED = "staged"
    RELEASED = "released"
    DEPRECATED = "deprecated"
    ROLLED_BACK = "rolled_back"


ARTIFACT_TRANSITIONS: dict[ArtifactState, frozenset[ArtifactState]] = {
    ArtifactState.STAGED: frozenset({ArtifactState.RELEASED, ArtifactState.ROLLED_BACK}),
    ArtifactState.RELEASED: frozenset({ArtifactState.DEPRECATED, ArtifactState.ROLLED_BACK}),
    ArtifactState.DEPRECATED: frozenset(),
    ArtifactState.ROLLED_BACK: frozenset(),
}


@dataclass(slots=True)
class Artifact:
    """Immutable content reference tracked through promotion states."""

    version: str
    content_ref: str
    run_id: str
    state: ArtifactState = ArtifactState.STAGED
    created_at: datetime = field(default_factory=utcnow)
    released_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def transition(self, to_state: ArtifactState) -> None:
        """Move to *to_state*, enforcing the lifecycle.

        Raises
        ------
        InvalidTransitionError
            If the lifecycle does not allow the move
        """
        if to_state not in ARTIFACT_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Artifact '{self.version}' cannot move from {self.state} to {to_state}"
            )
        self.state = to_state
        self.updated_at = utcnow()
        if to_state == ArtifactState.RELEASED:
            self.released_at = self.updated_at


def artifact_to_storage(artifact: Artifact) -> dict[str, Any]:
    return {
        "version": artifact.version,
        "content_ref": artifact.content_ref,
        "run_id": artifact.run_id,
        "state": str(artifact.state),
        "created_at": artifact.created_at.isoformat(),
        "released_at": artifact.released_at.isoformat() if artifact.released_at else None,
        "updated_at": artifact.updated_at.isoformat(),
    }


def artifact_from_storage(data: dict[str, Any]) -> Artifact:
    released_at = data.get("released_at")
    return Artifact(
        version=data["version"],
        content_ref=data["content_ref"],
        run_id=data["run_id"],
        state=ArtifactState(data["state"]),
        created_at=datetime.fromisoformat(data["created_at"]),
        released_at=datetime.fromisoformat(released_at) if released_at else None,
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )
