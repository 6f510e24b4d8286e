"""Configuration data models for hexship."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from hexship.kernel.domain.pipeline import CanaryPolicy
from hexship.kernel.exceptions import ValidationError


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Logging configuration for hexship.

    Attributes
    ----------
    level : str, default="INFO"
        Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    format : str, default="structured"
        Output format (console, json, structured, rich)
    output_file : str | None, default=None
        Optional file path to write JSON logs to
    use_color : bool, default=True
        Use ANSI color codes (auto-disabled for non-TTY)
    include_timestamp : bool, default=True
        Include timestamp in log output
    backtrace : bool, default=True
        Enable extended backtraces
    diagnose : bool, default=False
        Show variable values in tracebacks (keep off in production)

    Examples
    --------
    YAML configuration::

        kind: Config
        spec:
          logging:
            level: DEBUG
            format: rich

    Environment variable overrides::

        export HEXSHIP_LOG_LEVEL=DEBUG
        export HEXSHIP_LOG_FORMAT=json
        export HEXSHIP_LOG_FILE=/var/log/hexship/engine.log
    """

    level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "structured", "rich"] = "structured"
    output_file: str | None = None
    use_color: bool = True
    include_timestamp: bool = True
    backtrace: bool = True
    diagnose: bool = False


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Worker pool and stage concurrency limits.

    Attributes
    ----------
    workers : int
        Runs executed concurrently by the engine's worker pool
    max_concurrent_stages : int
        Global cap on executing stages across all runs
    max_concurrent_stages_per_run : int
        Cap on executing stages within one run
    default_stage_timeout : float | None
        Deadline for stages that do not declare ``timeoutSeconds``
    """

    workers: int = 4
    max_concurrent_stages: int = 16
    max_concurrent_stages_per_run: int = 4
    default_stage_timeout: float | None = None

    def __post_init__(self) -> None:
        for name in ("workers", "max_concurrent_stages", "max_concurrent_stages_per_run"):
            if getattr(self, name) < 1:
                raise ValidationError(name, "must be at least 1", getattr(self, name))
        if self.default_stage_timeout is not None and self.default_stage_timeout <= 0:
            raise ValidationError("default_stage_timeout", "must be positive")


@dataclass(frozen=True, slots=True)
class TriggerConfig:
    """Trigger admission settings.

    Attributes
    ----------
    secret : str | None
        Shared HMAC secret for notification signatures
    dedup_window_seconds : float
        How long a ``(repository, branch, change_ref)`` key is remembered
    queue_size : int
        Capacity of the admission queue
    default_pipeline : str | None
        Pipeline used when a notification does not name one
    """

    secret: str | None = None
    dedup_window_seconds: float = 300.0
    queue_size: int = 100
    default_pipeline: str | None = None

    def __post_init__(self) -> None:
        if self.dedup_window_seconds < 0:
            raise ValidationError("dedup_window_seconds", "must be zero or positive")
        if self.queue_size < 1:
            raise ValidationError("queue_size", "must be at least 1", self.queue_size)


@dataclass(frozen=True, slots=True)
class GateConfig:
    """Quality gate settings; bypass tokens are stored as SHA-256 digests only."""

    bypass_token_digests: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ArtifactConfig:
    """Artifact registry settings."""

    retention: int = 5

    def __post_init__(self) -> None:
        if self.retention < 0:
            raise ValidationError("retention", "must be zero or positive", self.retention)


@dataclass(frozen=True, slots=True)
class RolloutConfig:
    """Default canary policy for pipelines that do not declare one."""

    steps: tuple[float, ...] = (10.0, 50.0, 100.0)
    observation_window_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    failure_threshold: float = 0.05
    min_samples: int = 1

    def to_policy(self) -> CanaryPolicy:
        return CanaryPolicy(
            steps=self.steps,
            observation_window_seconds=self.observation_window_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            failure_threshold=self.failure_threshold,
            min_samples=self.min_samples,
        )


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Persistence backend.

    Attributes
    ----------
    backend : str
        ``memory`` or ``sqlite``
    path : str
        Database file for the sqlite backend
    """

    backend: Literal["memory", "sqlite"] = "memory"
    path: str = "hexship.db"

    def __post_init__(self) -> None:
        if self.backend not in ("memory", "sqlite"):
            raise ValidationError("storage.backend", "must be 'memory' or 'sqlite'", self.backend)


@dataclass(frozen=True, slots=True)
class AdapterConfig:
    """An adapter chosen by alias or module path, with constructor params."""

    name: str
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("adapter.name", "cannot be empty")


@dataclass(slots=True)
class HexShipConfig:
    """Complete hexship configuration.

    Attributes
    ----------
    logging : LoggingConfig
        Logging configuration
    scheduler : SchedulerConfig
        Worker pool and concurrency limits
    trigger : TriggerConfig
        Trigger admission settings
    gate : GateConfig
        Quality gate bypass settings
    artifact : ArtifactConfig
        Artifact retention
    rollout : RolloutConfig
        Default canary policy
    storage : StorageConfig
        Persistence backend
    adapters : dict[str, AdapterConfig]
        Default stage adapter per capability (``build``, ``analyze``, ...)
    deployment_target : AdapterConfig
        Deployment target adapter
    pipelines : list[str]
        Pipeline definition files loaded by ``hexship serve``

    Examples
    --------
    ``kind: Config`` manifest::

        kind: Config
        spec:
          scheduler:
            workers: 8
          trigger:
            secret: ${HEXSHIP_TRIGGER_SECRET}
          storage:
            backend: sqlite
            path: /var/lib/hexship/state.db
          adapters:
            build: {name: command, params: {command: "make build"}}
          deployment_target:
            name: http_target
            params: {base_url: "https://deploy.internal"}
          pipelines: [pipelines/service.yaml]
    """

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    artifact: ArtifactConfig = field(default_factory=ArtifactConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    adapters: dict[str, AdapterConfig] = field(default_factory=dict)
    deployment_target: AdapterConfig = field(
        default_factory=lambda: AdapterConfig(name="mock_target")
    )
    pipelines: list[str] = field(default_factory=list)
