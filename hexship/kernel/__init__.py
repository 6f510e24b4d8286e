"""hexship kernel - the public API of the orchestration core.

User-space code (``hexship.api``, ``hexship.server``, ``hexship.cli`` and
end-user applications) should import from ``hexship.kernel``. Kernel-space
code (``hexship.kernel.*``, ``hexship.stdlib.*``, ``hexship.compiler.*``,
``hexship.drivers.*``) imports from the submodules directly.

Exports are grouped by category:
- Pipeline execution
- Domain types
- Port protocols
- Configuration
- Component resolution
- Exceptions
- Logging
"""

# ============================================================================
# 1. Domain types
# ============================================================================
from hexship.kernel.domain import (
    AdapterRef,
    Artifact,
    ArtifactState,
    BypassAuditEntry,
    CanaryPolicy,
    Comparator,
    ConditionResult,
    Deployment,
    ExitCode,
    GateCondition,
    GateDecision,
    GateVerdict,
    HealthSample,
    PipelineDefinition,
    RetryPolicy,
    RolloutState,
    Run,
    RunStatus,
    StageCapability,
    StageDefinition,
    StageResult,
    StageStatus,
    TriggerContext,
    TriggerNotification,
    TriggerReceipt,
)

# ============================================================================
# 2. Exceptions
# ============================================================================
from hexship.kernel.exceptions import (
    ArtifactPublishError,
    ConfigurationError,
    CycleDetectedError,
    DependencyUnmetError,
    DeploymentHealthCheckFailure,
    DuplicateStageError,
    DuplicateTriggerError,
    GateOverrideError,
    HexShipError,
    InvalidTransitionError,
    MissingDependencyError,
    PipelineDefinitionError,
    PromotionBlockedError,
    QualityGateFailure,
    ResolveError,
    ResourceNotFoundError,
    RollbackFailure,
    RolloutAbortedError,
    RolloutInProgressError,
    StageCancelledError,
    StageError,
    StageExecutionError,
    StageTimeoutError,
    TriggerQueueFullError,
    TriggerValidationError,
    ValidationError,
)

# ============================================================================
# 3. Logging
# ============================================================================
from hexship.kernel.logging import configure_logging, get_logger

# ============================================================================
# 4. Port protocols
# ============================================================================
from hexship.kernel.ports import (
    ArtifactHandle,
    DeploymentTarget,
    StageAdapter,
    StageContext,
    StageOutcome,
    SupportsCollectionStorage,
)

# ============================================================================
# 5. Configuration & component resolution
# ============================================================================
from hexship.kernel.config import HexShipConfig
from hexship.kernel.resolver import instantiate, register_alias, resolve

# ============================================================================
# 6. Pipeline execution (imports the stdlib libs, so it comes last)
# ============================================================================
from hexship.kernel.engine import PipelineEngine, RecoveryReport  # noqa: E402

__all__ = [
    # Execution
    "PipelineEngine",
    "RecoveryReport",
    # Domain
    "AdapterRef",
    "Artifact",
    "ArtifactState",
    "BypassAuditEntry",
    "CanaryPolicy",
    "Comparator",
    "ConditionResult",
    "Deployment",
    "ExitCode",
    "GateCondition",
    "GateDecision",
    "GateVerdict",
    "HealthSample",
    "PipelineDefinition",
    "RetryPolicy",
    "RolloutState",
    "Run",
    "RunStatus",
    "StageCapability",
    "StageDefinition",
    "StageResult",
    "StageStatus",
    "TriggerContext",
    "TriggerNotification",
    "TriggerReceipt",
    # Ports
    "ArtifactHandle",
    "DeploymentTarget",
    "StageAdapter",
    "StageContext",
    "StageOutcome",
    "SupportsCollectionStorage",
    # Configuration & resolution
    "HexShipConfig",
    "instantiate",
    "register_alias",
    "resolve",
    # Exceptions
    "ArtifactPublishError",
    "ConfigurationError",
    "CycleDetectedError",
    "DependencyUnmetError",
    "DeploymentHealthCheckFailure",
    "DuplicateStageError",
    "DuplicateTriggerError",
    "GateOverrideError",
    "HexShipError",
    "InvalidTransitionError",
    "MissingDependencyError",
    "PipelineDefinitionError",
    "PromotionBlockedError",
    "QualityGateFailure",
    "ResolveError",
    "ResourceNotFoundError",
    "RollbackFailure",
    "RolloutAbortedError",
    "RolloutInProgressError",
    "StageCancelledError",
    "StageError",
    "StageExecutionError",
    "StageTimeoutError",
    "TriggerQueueFullError",
    "TriggerValidationError",
    "ValidationError",
    # Logging
    "configure_logging",
    "get_logger",
]
