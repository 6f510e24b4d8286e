"""Core exception hierarchy for hexship.

All hexship exceptions inherit from :class:`HexShipError` so callers can catch
every engine error in one place. Stage-level errors carry a ``retryable`` flag
that the stage executor consults before scheduling another attempt.
"""

from __future__ import annotations

# ============================================================================
# Base Exception
# ============================================================================


class HexShipError(Exception):
    """Base exception for all hexship errors."""

    pass


# ============================================================================
# Configuration & Validation Errors
# ============================================================================


class ConfigurationError(HexShipError):
    """Raised when configuration is invalid or missing.

    Examples
    --------
    Example usage::

        raise ConfigurationError("trigger", "dedup_window_seconds must be positive")
    """

    def __init__(self, component: str, reason: str) -> None:
        super().__init__(f"Configuration error in '{component}': {reason}")
        self.component = component
        self.reason = reason


class ValidationError(HexShipError):
    """Raised when data validation fails.

    Examples
    --------
    Example usage::

        raise ValidationError("max_attempts", "must be positive", value=-1)
    """

    def __init__(self, field: str, constraint: str, value: object = None) -> None:
        if value is not None:
            msg = f"Validation failed for '{field}': {constraint} (got {value!r})"
        else:
            msg = f"Validation failed for '{field}': {constraint}"
        super().__init__(msg)
        self.field = field
        self.constraint = constraint
        self.value = value


class ResourceNotFoundError(HexShipError):
    """Raised when a run, artifact or environment cannot be found."""

    def __init__(
        self, resource_type: str, resource_id: str, available: list[str] | None = None
    ) -> None:
        msg = f"{resource_type.title()} '{resource_id}' not found"
        if available:
            msg += f". Available: {', '.join(available[:5])}"
            if len(available) > 5:
                msg += f" ... and {len(available) - 5} more"
        super().__init__(msg)
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.available = available


class ResolveError(HexShipError):
    """Raised when an adapter alias or module path cannot be resolved."""

    def __init__(self, kind: str, reason: str) -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(f"Cannot resolve '{kind}': {reason}")


class InvalidTransitionError(HexShipError):
    """Raised when a state transition violates a lifecycle state machine."""


# ============================================================================
# Pipeline Definition Errors
# ============================================================================


class PipelineDefinitionError(HexShipError):
    """Base exception for invalid pipeline definitions."""

    __slots__ = ()


class CycleDetectedError(PipelineDefinitionError):
    """Raised when the stage graph contains a cycle."""

    __slots__ = ()


class MissingDependencyError(PipelineDefinitionError):
    """Raised when a stage depends on a stage that does not exist."""

    __slots__ = ()


class DuplicateStageError(PipelineDefinitionError):
    """Raised when two stages share the same identifier."""

    __slots__ = ()


# ============================================================================
# Trigger Errors
# ============================================================================


class TriggerValidationError(HexShipError):
    """Raised when a change notification fails validation (bad signature, blank fields)."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Trigger rejected: {reason}")
        self.reason = reason


class DuplicateTriggerError(HexShipError):
    """Raised when a notification repeats one already seen inside the dedup window."""

    def __init__(self, key: tuple[str, str, str], run_id: str) -> None:
        repository, branch, change_ref = key
        super().__init__(
            f"Duplicate trigger for {repository}@{branch} ({change_ref}); existing run {run_id}"
        )
        self.key = key
        self.run_id = run_id


class TriggerQueueFullError(HexShipError):
    """Raised when the bounded admission queue cannot take another run."""

    def __init__(self, capacity: int) -> None:
        super().__init__(f"Trigger queue is full ({capacity} pending runs)")
        self.capacity = capacity


# ============================================================================
# Stage Errors
# ============================================================================


class StageError(HexShipError):
    """Base exception for errors raised while executing a stage."""

    retryable: bool = True

    def __init__(self, stage_id: str, message: str) -> None:
        super().__init__(message)
        self.stage_id = stage_id


class DependencyUnmetError(StageError):
    """Raised when a stage is dispatched before all dependencies succeeded.

    This is an internal invariant violation and always indicates a defect.
    """

    retryable = False

    def __init__(self, stage_id: str, unmet: list[str]) -> None:
        super().__init__(
            stage_id, f"Stage '{stage_id}' dispatched with unmet dependencies: {', '.join(unmet)}"
        )
        self.unmet = unmet


class StageExecutionError(StageError):
    """Raised when a stage's external tool adapter reports failure."""

    def __init__(
        self, stage_id: str, original_error: Exception | str, *, retryable: bool | None = None
    ) -> None:
        super().__init__(stage_id, f"Stage '{stage_id}' failed: {original_error}")
        self.original_error = original_error
        if retryable is None:
            retryable = bool(getattr(original_error, "retryable", True))
        self.retryable = retryable


class StageTimeoutError(StageError):
    """Raised when a stage exceeds its deadline."""

    def __init__(self, stage_id: str, timeout: float) -> None:
        super().__init__(stage_id, f"Stage '{stage_id}' timed out after {timeout:g}s")
        self.timeout = timeout


class QualityGateFailure(StageError):
    """Raised by a gate stage when the run's gate verdict blocks promotion."""

    retryable = False

    def __init__(self, stage_id: str, failed_conditions: list[str]) -> None:
        conditions = ", ".join(failed_conditions) or "unknown"
        super().__init__(stage_id, f"Quality gate failed: {conditions}")
        self.failed_conditions = failed_conditions


class DeploymentHealthCheckFailure(StageError):
    """Raised when a rollout step breaches the failure-rate threshold."""

    retryable = False

    def __init__(
        self, stage_id: str, environment: str, failure_rate: float, threshold: float
    ) -> None:
        super().__init__(
            stage_id,
            f"Rollout to '{environment}' unhealthy: failure rate {failure_rate:.2%} "
            f"exceeds {threshold:.2%}",
        )
        self.environment = environment
        self.failure_rate = failure_rate
        self.threshold = threshold


class RollbackFailure(StageError):
    """Raised when reverting an environment fails. Requires operator intervention."""

    retryable = False

    def __init__(self, stage_id: str, environment: str, original_error: Exception) -> None:
        super().__init__(
            stage_id, f"Rollback of '{environment}' failed: {original_error}"
        )
        self.environment = environment
        self.original_error = original_error


class RolloutAbortedError(StageError):
    """Raised when a deployment target error aborted a rollout and traffic was reverted."""

    retryable = False

    def __init__(self, stage_id: str, environment: str, original_error: Exception) -> None:
        super().__init__(
            stage_id, f"Rollout to '{environment}' aborted and reverted: {original_error}"
        )
        self.environment = environment
        self.original_error = original_error


class StageCancelledError(StageError):
    """Raised when an in-flight stage is interrupted because its run was cancelled."""

    retryable = False

    def __init__(self, stage_id: str, reason: str | None = None) -> None:
        super().__init__(stage_id, f"Stage '{stage_id}' cancelled: {reason or 'run cancelled'}")
        self.reason = reason


class RolloutInProgressError(StageError):
    """Raised when a rollout is requested for an environment that already has one in flight."""

    def __init__(self, stage_id: str, environment: str) -> None:
        super().__init__(stage_id, f"Rollout already in progress for '{environment}'")
        self.environment = environment


# ============================================================================
# Gate & Artifact Errors
# ============================================================================


class GateOverrideError(HexShipError):
    """Raised when a gate bypass is requested with an unauthorized token."""


class ArtifactPublishError(HexShipError):
    """Raised on duplicate-version conflicts or when the artifact store is unreachable."""

    def __init__(self, version: str, reason: str, *, retryable: bool = False) -> None:
        super().__init__(f"Cannot publish artifact '{version}': {reason}")
        self.version = version
        self.reason = reason
        self.retryable = retryable


class PromotionBlockedError(InvalidTransitionError):
    """Raised when promotion is attempted without a passing gate and a healthy rollout."""

    def __init__(self, version: str, reason: str) -> None:
        super().__init__(f"Promotion of '{version}' blocked: {reason}")
        self.version = version
        self.reason = reason


__all__ = [
    # Base
    "HexShipError",
    # Configuration & Validation
    "ConfigurationError",
    "ValidationError",
    "ResourceNotFoundError",
    "ResolveError",
    "InvalidTransitionError",
    # Pipeline definition
    "PipelineDefinitionError",
    "CycleDetectedError",
    "MissingDependencyError",
    "DuplicateStageError",
    # Trigger
    "TriggerValidationError",
    "DuplicateTriggerError",
    "TriggerQueueFullError",
    # Stage
    "StageError",
    "DependencyUnmetError",
    "StageExecutionError",
    "StageTimeoutError",
    "StageCancelledError",
    "QualityGateFailure",
    "DeploymentHealthCheckFailure",
    "RollbackFailure",
    "RolloutAbortedError",
    "RolloutInProgressError",
    # Gate & Artifact
    "GateOverrideError",
    "ArtifactPublishError",
    "PromotionBlockedError",
]
