"""Mock deployment target for testing purposes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from hexship.kernel.domain.deployment import HealthSample


@dataclass
class RecordedApply:
    """A recorded traffic change for test assertions."""

    environment: str
    version: str
    traffic_percent: float


class MockDeploymentTarget:
    """DeploymentTarget that records traffic changes and reports scripted health.

    Parameters
    ----------
    error_rates : dict[str, float] | None
        Error rate reported per version.
    default_error_rate : float
        Error rate for versions not in ``error_rates``.
    fail_probe : bool
        Make every health probe raise.
    fail_rollback : bool
        Make every rollback raise.
    apply_delay : float
        Seconds each ``aapply`` takes.
    fail_apply_at : float | None
        Make ``aapply`` raise when asked for this traffic percentage.

    Examples
    --------
    Unhealthy canary::

        target = MockDeploymentTarget(error_rates={"v2": 0.5})
        # rolling out v2 breaches a 5% threshold at the first step
        assert target.rollbacks == [("prod", "v1")]
    """

    def __init__(
        self,
        error_rates: dict[str, float] | None = None,
        default_error_rate: float = 0.0,
        fail_probe: bool = False,
        fail_rollback: bool = False,
        apply_delay: float = 0.0,
        fail_apply_at: float | None = None,
    ) -> None:
        self.error_rates = dict(error_rates or {})
        self.default_error_rate = default_error_rate
        self.fail_probe = fail_probe
        self.fail_rollback = fail_rollback
        self.apply_delay = apply_delay
        self.fail_apply_at = fail_apply_at
        self.applied: list[RecordedApply] = []
        self.rollbacks: list[tuple[str, str | None]] = []
        self.live: dict[str, str | None] = {}
        self.probes = 0

    async def aapply(self, environment: str, version: str, traffic_percent: float) -> None:
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        if self.fail_apply_at is not None and traffic_percent == self.fail_apply_at:
            raise ConnectionError(
                f"mock target refused {version} at {traffic_percent:g}% in '{environment}'"
            )
        self.applied.append(RecordedApply(environment, version, traffic_percent))
        if traffic_percent >= 100:
            self.live[environment] = version

    async def arollback(self, environment: str, version: str | None) -> None:
        self.rollbacks.append((environment, version))
        if self.fail_rollback:
            raise ConnectionError(f"rollback of '{environment}' refused by mock target")
        self.live[environment] = version

    async def ahealth(self, environment: str, version: str) -> HealthSample:
        self.probes += 1
        if self.fail_probe:
            raise ConnectionError(f"health probe for '{environment}' unreachable")
        return HealthSample(error_rate=self.error_rates.get(version, self.default_error_rate))
