"""Configuration models for hexship."""

from hexship.kernel.config.models import (
    AdapterConfig,
    ArtifactConfig,
    GateConfig,
    HexShipConfig,
    LoggingConfig,
    RolloutConfig,
    SchedulerConfig,
    StorageConfig,
    TriggerConfig,
)

__all__ = [
    "AdapterConfig",
    "ArtifactConfig",
    "GateConfig",
    "HexShipConfig",
    "LoggingConfig",
    "RolloutConfig",
    "SchedulerConfig",
    "StorageConfig",
    "TriggerConfig",
]
