"""Stage adapter port - the contract every external tool implements.

Build tools, static analysers, image builders and custom scripts differ in
how they work but share one contract: *run, report success or failure,
produce an output handle*. Adapters are plain classes satisfying
:class:`StageAdapter`; which one a stage uses is chosen by configuration
(see :mod:`hexship.kernel.resolver`), not by subclassing.

Analysis adapters put their metrics payload in ``StageOutcome.metrics``;
packaging adapters return the produced artifact in ``StageOutcome.artifact``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from hexship.kernel.domain.pipeline import StageDefinition
    from hexship.kernel.domain.run import TriggerContext
    from hexship.kernel.orchestration.cancellation import CancellationToken


@dataclass(frozen=True, slots=True)
class ArtifactHandle:
    """Artifact produced by a packaging tool."""

    version: str
    content_ref: str


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """What an adapter reports back for one attempt."""

    success: bool
    output_ref: str | None = None
    metrics: dict[str, float] = field(default_factory=dict)
    artifact: ArtifactHandle | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class StageContext:
    """Everything an adapter may need for one attempt.

    Adapters doing long waits should check ``cancel.cancelled`` or await
    ``cancel.wait()`` so cancellation stays cooperative.
    """

    run_id: str
    stage: StageDefinition
    trigger: TriggerContext
    attempt: int
    cancel: CancellationToken
    upstream: dict[str, StageOutcome] = field(default_factory=dict)


@runtime_checkable
class StageAdapter(Protocol):
    """External tool adapter."""

    async def arun(self, context: StageContext) -> StageOutcome:
        """Execute one attempt of the stage and report its outcome."""
        ...


__all__ = ["ArtifactHandle", "StageAdapter", "StageContext", "StageOutcome"]
