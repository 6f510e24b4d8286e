"""HTTP deployment target adapter."""

from hexship.stdlib.adapters.http.http_target import DeploymentTargetError, HttpDeploymentTarget

__all__ = ["DeploymentTargetError", "HttpDeploymentTarget"]
