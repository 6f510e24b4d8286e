"""Mock adapters for testing."""

from hexship.stdlib.adapters.mock.mock_stage import MockStageAdapter, RecordedStageCall
from hexship.stdlib.adapters.mock.mock_target import MockDeploymentTarget, RecordedApply

__all__ = [
    "MockDeploymentTarget",
    "MockStageAdapter",
    "RecordedApply",
    "RecordedStageCall",
]
