"""Domain layer exports for hexship."""

from hexship.kernel.domain.artifact import Artifact, ArtifactState
from hexship.kernel.domain.deployment import Deployment, HealthSample, RolloutState
from hexship.kernel.domain.gate import BypassAuditEntry, ConditionResult, GateDecision, GateVerdict
from hexship.kernel.domain.pipeline import (
    AdapterRef,
    CanaryPolicy,
    Comparator,
    GateCondition,
    PipelineDefinition,
    RetryPolicy,
    StageCapability,
    StageDefinition,
)
from hexship.kernel.domain.run import (
    ExitCode,
    Run,
    RunStatus,
    StageResult,
    StageStatus,
    TriggerContext,
)
from hexship.kernel.domain.trigger import TriggerNotification, TriggerReceipt

__all__ = [
    # Pipeline definition
    "AdapterRef",
    "CanaryPolicy",
    "Comparator",
    "GateCondition",
    "PipelineDefinition",
    "RetryPolicy",
    "StageCapability",
    "StageDefinition",
    # Runs
    "ExitCode",
    "Run",
    "RunStatus",
    "StageResult",
    "StageStatus",
    "TriggerContext",
    "TriggerNotification",
    "TriggerReceipt",
    # Gate
    "BypassAuditEntry",
    "ConditionResult",
    "GateDecision",
    "GateVerdict",
    # Artifacts & deployments
    "Artifact",
    "ArtifactState",
    "Deployment",
    "HealthSample",
    "RolloutState",
]
