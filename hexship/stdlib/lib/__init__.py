"""Built-in system libraries (libs) for hexship.

Each lib owns one concern of a pipeline run and persists it through the
collection storage port.
"""

from hexship.stdlib.lib.artifact_manager import ArtifactManager
from hexship.stdlib.lib.gate_evaluator import GateEvaluator
from hexship.stdlib.lib.rollout_controller import RolloutController
from hexship.stdlib.lib.run_registry import RunRegistry
from hexship.stdlib.lib.trigger_ingestion import TriggerIngestion

__all__ = [
    "ArtifactManager",
    "GateEvaluator",
    "RolloutController",
    "RunRegistry",
    "TriggerIngestion",
]
