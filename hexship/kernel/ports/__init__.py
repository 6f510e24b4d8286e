"""Port interfaces for external collaborators."""

from hexship.kernel.ports.data_store import SupportsCollectionStorage
from hexship.kernel.ports.deployment_target import DeploymentTarget
from hexship.kernel.ports.stage_adapter import (
    ArtifactHandle,
    StageAdapter,
    StageContext,
    StageOutcome,
)

__all__ = [
    "ArtifactHandle",
    "DeploymentTarget",
    "StageAdapter",
    "StageContext",
    "StageOutcome",
    "SupportsCollectionStorage",
]
