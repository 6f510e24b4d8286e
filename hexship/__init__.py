"""hexship - pipeline orchestration core.

Carries a code change through build, quality gating, packaging and a canary
deployment with automatic rollback.
"""

# Version is defined in pyproject.toml and read dynamically
try:
    from importlib.metadata import version

    __version__ = version("hexship")
except Exception:
    __version__ = "0.0.0.dev0"  # Fallback for development installs

from hexship.compiler import load_config, load_pipeline, load_pipelines
from hexship.kernel import (
    ExitCode,
    HexShipConfig,
    HexShipError,
    PipelineDefinition,
    PipelineEngine,
    Run,
    RunStatus,
    TriggerContext,
    TriggerNotification,
)

__all__ = [
    "ExitCode",
    "HexShipConfig",
    "HexShipError",
    "PipelineDefinition",
    "PipelineEngine",
    "Run",
    "RunStatus",
    "TriggerContext",
    "TriggerNotification",
    "__version__",
    "load_config",
    "load_pipeline",
    "load_pipelines",
]
