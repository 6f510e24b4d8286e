"""RolloutController lib - per-environment canary rollouts with automatic rollback.

Each environment is a small state machine (see
:mod:`hexship.kernel.domain.deployment`) guarded by a rollout lock. A second
rollout request for an environment whose lock is held is rejected with
:class:`RolloutInProgressError`; requests are never queued.

A rollout applies the new version step by step (for example 10% -> 50% ->
100%). After each step the controller polls the deployment target over the
observation window. The failure rate is the mean error rate of the step's
samples, a failed probe counting as 1.0; once ``min_samples`` samples exist,
a rate above ``failure_threshold`` aborts the rollout and reverts traffic to
the previously released version.

The deployment record is persisted on every transition so that
:meth:`RolloutController.arecover` can fail any in-flight rollout safe after
a crash.
"""

from __future__ import annotations

import asyncio
from statistics import fmean
from typing import TYPE_CHECKING

from hexship.kernel.domain.deployment import (
    Deployment,
    HealthSample,
    RolloutState,
    deployment_from_storage,
    deployment_to_storage,
)
from hexship.kernel.domain.pipeline import CanaryPolicy
from hexship.kernel.exceptions import (
    DeploymentHealthCheckFailure,
    InvalidTransitionError,
    ResourceNotFoundError,
    RollbackFailure,
    RolloutAbortedError,
    RolloutInProgressError,
    StageCancelledError,
    StageError,
)
from hexship.kernel.logging import get_logger
from hexship.kernel.orchestration.cancellation import CancellationToken
from hexship.kernel.orchestration.events import (
    RolloutRolledBack,
    RolloutStateChanged,
    RolloutStepApplied,
)
from hexship.stdlib.lib_base import HexShipLib

if TYPE_CHECKING:
    from hexship.kernel.ports.data_store import SupportsCollectionStorage
    from hexship.kernel.ports.deployment_target import DeploymentTarget
    from hexship.kernel.ports.observer_manager import ObserverManager

logger = get_logger(__name__)

DEPLOYMENTS_COLLECTION = "deployments"
MANUAL_STAGE_ID = "manual"


class RolloutController(HexShipLib):
    """Drives environments through canary rollouts.

    Parameters
    ----------
    storage : SupportsCollectionStorage
        Holds one rollout record per environment.
    target : DeploymentTarget
        Applies versions and reports health.
    observer_manager : ObserverManager
        Receives rollout events.
    default_policy : CanaryPolicy | None
        Used when a rollout does not pass its own policy.
    """

    def __init__(
        self,
        storage: SupportsCollectionStorage,
        target: DeploymentTarget,
        observer_manager: ObserverManager,
        *,
        default_policy: CanaryPolicy | None = None,
    ) -> None:
        self._storage = storage
        self._target = target
        self._observers = observer_manager
        self.default_policy = default_policy or CanaryPolicy()
        self._locks: dict[str, asyncio.Lock] = {}
        self._deployments: dict[str, Deployment] = {}

    async def asetup(self) -> None:
        for doc in await self._storage.aquery(DEPLOYMENTS_COLLECTION):
            deployment = deployment_from_storage(doc)
            self._deployments[deployment.environment] = deployment

    # ------------------------------------------------------------------
    # Rollout
    # ------------------------------------------------------------------

    def locked(self, environment: str) -> bool:
        """Whether a rollout or rollback currently holds *environment*'s lock."""
        lock = self._locks.get(environment)
        return lock is not None and lock.locked()

    async def arollout(
        self,
        environment: str,
        version: str,
        *,
        run_id: str | None = None,
        stage_id: str = MANUAL_STAGE_ID,
        policy: CanaryPolicy | None = None,
        cancel: CancellationToken | None = None,
    ) -> Deployment:
        """Roll *version* out to *environment* and return the Healthy record.

        Once the environment has entered ``RolloutInProgress`` every failure,
        including cancellation of the calling task, reverts traffic before the
        error propagates.

        Raises
        ------
        RolloutInProgressError
            If the environment's lock is held or a rollback awaits an operator
        DeploymentHealthCheckFailure
            If a step breached the failure threshold; traffic was reverted
        StageCancelledError
            If the run was cancelled mid-rollout; traffic was reverted
        RolloutAbortedError
            If the deployment target raised; traffic was reverted
        RollbackFailure
            If reverting failed; the environment stays ``RollingBack``
        """
        policy = policy or self.default_policy
        cancel = cancel or CancellationToken()
        lock = self._lock_for(environment)
        if lock.locked():
            raise RolloutInProgressError(stage_id, environment)

        async with lock:
            deployment = self._deployments.get(environment) or Deployment(environment=environment)
            self._deployments[environment] = deployment
            if deployment.state.in_flight:
                raise RolloutInProgressError(stage_id, environment)

            deployment.target_version = version
            deployment.run_id = run_id
            logger.info(
                "Rolling out {version} to '{environment}' in steps {steps}",
                version=version,
                environment=environment,
                steps=list(policy.steps),
            )

            try:
                await self._transition(deployment, RolloutState.ROLLOUT_IN_PROGRESS)
                for index, percent in enumerate(policy.steps):
                    if cancel.cancelled:
                        raise StageCancelledError(stage_id, cancel.reason)
                    deployment.step_index = index
                    deployment.traffic_percent = percent
                    await self._save(deployment)
                    await self._target.aapply(environment, version, percent)
                    await self._observers.notify(
                        RolloutStepApplied(
                            environment=environment,
                            version=version,
                            step_index=index,
                            traffic_percent=percent,
                        )
                    )
                    await self._observe(deployment, version, policy, cancel, stage_id)
            except StageError as error:
                await self._abort(deployment, stage_id, str(error))
                raise
            except asyncio.CancelledError:
                await self._abort(deployment, stage_id, "rollout interrupted")
                raise
            except Exception as error:
                await self._abort(deployment, stage_id, str(error))
                raise RolloutAbortedError(stage_id, environment, error) from error

            deployment.previous_version = deployment.current_version
            deployment.current_version = version
            deployment.target_version = None
            deployment.step_index = None
            deployment.traffic_percent = 100.0
            await self._transition(deployment, RolloutState.HEALTHY)
            logger.info(
                "Environment '{environment}' Healthy at {version}",
                environment=environment,
                version=version,
            )
            return deployment

    async def _observe(
        self,
        deployment: Deployment,
        version: str,
        policy: CanaryPolicy,
        cancel: CancellationToken,
        stage_id: str,
    ) -> float:
        """Poll health over the observation window; return the step's failure rate."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.observation_window_seconds
        samples: list[HealthSample] = []
        while True:
            sample = await self._sample(deployment.environment, version)
            samples.append(sample)
            deployment.history.append(sample)
            failure_rate = fmean(s.failure for s in samples)
            if len(samples) >= policy.min_samples and failure_rate > policy.failure_threshold:
                await self._save(deployment)
                raise DeploymentHealthCheckFailure(
                    stage_id, deployment.environment, failure_rate, policy.failure_threshold
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if await cancel.sleep(min(policy.poll_interval_seconds, remaining)):
                raise StageCancelledError(stage_id, cancel.reason)

        await self._save(deployment)
        if failure_rate > policy.failure_threshold:
            raise DeploymentHealthCheckFailure(
                stage_id, deployment.environment, failure_rate, policy.failure_threshold
            )
        logger.debug(
            "Step healthy for '{environment}': failure rate {rate:.2%} over {count} samples",
            environment=deployment.environment,
            rate=failure_rate,
            count=len(samples),
        )
        return failure_rate

    async def _sample(self, environment: str, version: str) -> HealthSample:
        try:
            return await self._target.ahealth(environment, version)
        except Exception as e:
            logger.warning(
                "Health probe for '{environment}' failed: {error}",
                environment=environment,
                error=e,
            )
            return HealthSample(error_rate=1.0, probe_ok=False)

    async def _abort(self, deployment: Deployment, stage_id: str, reason: str) -> None:
        """Revert traffic to the last released version and return to Idle."""
        failed_version = deployment.target_version
        await self._transition(deployment, RolloutState.ROLLING_BACK)
        logger.warning(
            "Rolling back '{environment}' from {failed} to {restored}: {reason}",
            environment=deployment.environment,
            failed=failed_version,
            restored=deployment.current_version,
            reason=reason,
        )
        try:
            await self._target.arollback(deployment.environment, deployment.current_version)
        except Exception as e:
            await self._save(deployment)
            logger.error(
                "Rollback of '{environment}' failed; operator intervention required: {error}",
                environment=deployment.environment,
                error=e,
            )
            raise RollbackFailure(stage_id, deployment.environment, e) from e

        deployment.target_version = None
        deployment.step_index = None
        deployment.traffic_percent = 100.0 if deployment.current_version else None
        await self._transition(deployment, RolloutState.IDLE)
        await self._observers.notify(
            RolloutRolledBack(
                environment=deployment.environment,
                failed_version=failed_version,
                restored_version=deployment.current_version,
                reason=reason,
            )
        )

    # ------------------------------------------------------------------
    # Manual control & recovery
    # ------------------------------------------------------------------

    async def aforce_rollback(
        self, environment: str, reason: str = "manual rollback"
    ) -> tuple[Deployment, str | None]:
        """Revert a settled environment to its previous version.

        Returns
        -------
        tuple[Deployment, str | None]
            The Idle record and the version that was reverted.

        Raises
        ------
        ResourceNotFoundError
            If nothing was ever deployed to *environment*
        RolloutInProgressError
            If a rollout holds the environment's lock
        InvalidTransitionError
            If there is no previous version to return to
        RollbackFailure
            If the deployment target failed to revert
        """
        lock = self._lock_for(environment)
        if lock.locked():
            raise RolloutInProgressError(MANUAL_STAGE_ID, environment)

        async with lock:
            deployment = self._deployments.get(environment)
            if deployment is None:
                raise ResourceNotFoundError(
                    "environment", environment, available=sorted(self._deployments)
                )
            if deployment.state.in_flight:
                raise RolloutInProgressError(MANUAL_STAGE_ID, environment)
            if deployment.previous_version is None:
                raise InvalidTransitionError(
                    f"Environment '{environment}' has no previous version to roll back to"
                )

            reverted = deployment.current_version
            await self._transition(deployment, RolloutState.ROLLING_BACK)
            try:
                await self._target.arollback(environment, deployment.previous_version)
            except Exception as e:
                await self._save(deployment)
                raise RollbackFailure(MANUAL_STAGE_ID, environment, e) from e

            deployment.current_version = deployment.previous_version
            deployment.previous_version = None
            deployment.traffic_percent = 100.0
            await self._transition(deployment, RolloutState.IDLE)
            logger.warning(
                "Environment '{environment}' manually rolled back from {reverted} to {restored}",
                environment=environment,
                reverted=reverted,
                restored=deployment.current_version,
            )
            await self._observers.notify(
                RolloutRolledBack(
                    environment=environment,
                    failed_version=reverted,
                    restored_version=deployment.current_version,
                    reason=reason,
                )
            )
            return deployment, reverted

    async def arecover(self) -> list[tuple[Deployment, str | None]]:
        """Fail every in-flight rollout safe to its last released version.

        Called once on startup, before any new rollout. Environments whose
        revert fails are left ``RollingBack`` and logged.

        Returns
        -------
        list[tuple[Deployment, str | None]]
            Each recovered record with the version that was in flight.
        """
        recovered: list[tuple[Deployment, str | None]] = []
        for deployment in list(self._deployments.values()):
            if not deployment.state.in_flight:
                continue
            async with self._lock_for(deployment.environment):
                failed_version = deployment.target_version
                if deployment.state == RolloutState.ROLLOUT_IN_PROGRESS:
                    await self._transition(deployment, RolloutState.ROLLING_BACK)
                try:
                    await self._target.arollback(
                        deployment.environment, deployment.current_version
                    )
                except Exception as e:
                    await self._save(deployment)
                    logger.error(
                        "Recovery of '{environment}' failed; still RollingBack: {error}",
                        environment=deployment.environment,
                        error=e,
                    )
                    continue
                deployment.target_version = None
                deployment.step_index = None
                deployment.traffic_percent = 100.0 if deployment.current_version else None
                await self._transition(deployment, RolloutState.IDLE)
                logger.warning(
                    "Recovered '{environment}' to {version} after interrupted rollout of {failed}",
                    environment=deployment.environment,
                    version=deployment.current_version,
                    failed=failed_version,
                )
                await self._observers.notify(
                    RolloutRolledBack(
                        environment=deployment.environment,
                        failed_version=failed_version,
                        restored_version=deployment.current_version,
                        reason="recovered after restart",
                    )
                )
                recovered.append((deployment, failed_version))
        return recovered

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def aget(self, environment: str) -> Deployment:
        """Get the rollout record of an environment.

        Raises
        ------
        ResourceNotFoundError
            If nothing was ever deployed there
        """
        deployment = self._deployments.get(environment)
        if deployment is None:
            data = await self._storage.aload(DEPLOYMENTS_COLLECTION, environment)
            if data is None:
                raise ResourceNotFoundError(
                    "environment", environment, available=sorted(self._deployments)
                )
            deployment = deployment_from_storage(data)
            self._deployments[environment] = deployment
        return deployment

    async def alist(self) -> list[Deployment]:
        return [self._deployments[env] for env in sorted(self._deployments)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, environment: str) -> asyncio.Lock:
        return self._locks.setdefault(environment, asyncio.Lock())

    async def _transition(self, deployment: Deployment, to_state: RolloutState) -> None:
        from_state = deployment.state
        deployment.transition(to_state)
        await self._save(deployment)
        await self._observers.notify(
            RolloutStateChanged(
                environment=deployment.environment,
                from_state=str(from_state),
                to_state=str(to_state),
                version=deployment.target_version or deployment.current_version,
            )
        )

    async def _save(self, deployment: Deployment) -> None:
        await self._storage.asave(
            DEPLOYMENTS_COLLECTION, deployment.environment, deployment_to_storage(deployment)
        )
