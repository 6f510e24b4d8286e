"""Deployment target port - the cloud provider behind the rollout controller."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from hexship.kernel.domain.deployment import HealthSample


@runtime_checkable
class DeploymentTarget(Protocol):
    """Applies versions to environments and reports their health."""

    async def aapply(self, environment: str, version: str, traffic_percent: float) -> None:
        """Route *traffic_percent* of *environment* to *version*."""
        ...

    async def arollback(self, environment: str, version: str | None) -> None:
        """Route all traffic back to *version* (``None`` tears the new version down)."""
        ...

    async def ahealth(self, environment: str, version: str) -> HealthSample:
        """Take one health observation of *version* in *environment*."""
        ...


__all__ = ["DeploymentTarget"]
