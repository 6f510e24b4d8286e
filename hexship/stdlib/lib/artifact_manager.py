"""ArtifactManager lib - versioned artifact registry and promotion lifecycle.

Artifacts are keyed by version in the ``artifacts`` collection. The registry
is idempotent: registering the same version with the same content returns
the stored artifact, while different content for an existing version is a
conflict. Promotion to ``released`` needs two pieces of evidence - a gate
decision that allows promotion and a ``Healthy`` rollout - and happens at
most once per artifact.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from hexship.kernel.domain.artifact import (
    Artifact,
    ArtifactState,
    artifact_from_storage,
    artifact_to_storage,
)
from hexship.kernel.domain.deployment import RolloutState
from hexship.kernel.exceptions import (
    ArtifactPublishError,
    PromotionBlockedError,
    ResourceNotFoundError,
)
from hexship.kernel.logging import get_logger
from hexship.kernel.orchestration.events import (
    ArtifactPurged,
    ArtifactRegistered,
    ArtifactStateChanged,
)
from hexship.stdlib.lib_base import HexShipLib

if TYPE_CHECKING:
    from hexship.kernel.domain.gate import GateDecision
    from hexship.kernel.ports.data_store import SupportsCollectionStorage
    from hexship.kernel.ports.observer_manager import ObserverManager

logger = get_logger(__name__)

ARTIFACTS_COLLECTION = "artifacts"
DEFAULT_RETENTION = 5


class ArtifactManager(HexShipLib):
    """Registers, promotes and retires build artifacts.

    Parameters
    ----------
    storage : SupportsCollectionStorage
        The versioned artifact store.
    observer_manager : ObserverManager
        Receives artifact events.
    retention : int
        Number of ``deprecated`` versions kept; older ones are purged after
        each promotion.
    """

    def __init__(
        self,
        storage: SupportsCollectionStorage,
        observer_manager: ObserverManager,
        *,
        retention: int = DEFAULT_RETENTION,
    ) -> None:
        if retention < 0:
            raise ValueError("retention must be zero or positive")
        self._storage = storage
        self._observers = observer_manager
        self.retention = retention
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def aregister(self, version: str, content_ref: str, run_id: str) -> Artifact:
        """Stage an artifact produced by *run_id*.

        Raises
        ------
        ArtifactPublishError
            If *version* exists with different content, or the store is
            unreachable
        """
        async with self._lock:
            existing = await self._load(version)
            if existing is not None:
                if existing.content_ref != content_ref:
                    raise ArtifactPublishError(
                        version,
                        f"version already exists with content {existing.content_ref!r}",
                    )
                logger.debug("Artifact {version} already registered", version=version)
                return existing

            artifact = Artifact(version=version, content_ref=content_ref, run_id=run_id)
            await self._save(artifact)

        logger.info("Staged artifact {version} from run {run_id}", version=version, run_id=run_id)
        await self._observers.notify(
            ArtifactRegistered(version=version, run_id=run_id, content_ref=content_ref)
        )
        return artifact

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def apromote(
        self,
        version: str,
        *,
        gate: GateDecision | None,
        rollout_state: RolloutState | None,
    ) -> Artifact:
        """Promote *version* to ``released`` exactly once.

        Promoting an artifact that is already released (or was released and
        since deprecated) is a no-op returning it unchanged. The previously
        released version becomes ``deprecated`` and retention runs.

        Raises
        ------
        PromotionBlockedError
            Without a gate decision allowing promotion and a Healthy rollout,
            or when the artifact was rolled back
        ResourceNotFoundError
            If the version was never registered
        """
        async with self._lock:
            artifact = await self._require(version)
            if artifact.state in (ArtifactState.RELEASED, ArtifactState.DEPRECATED):
                logger.debug(
                    "Artifact {version} already promoted ({state}); nothing to do",
                    version=version,
                    state=str(artifact.state),
                )
                return artifact
            if artifact.state == ArtifactState.ROLLED_BACK:
                raise PromotionBlockedError(version, "artifact was rolled back")
            if gate is None:
                raise PromotionBlockedError(version, "quality gate was not evaluated")
            if not gate.allows_promotion:
                raise PromotionBlockedError(
                    version, f"quality gate verdict is {gate.verdict} without override"
                )
            if rollout_state != RolloutState.HEALTHY:
                raise PromotionBlockedError(
                    version, f"deployment is {rollout_state or 'not started'}, not Healthy"
                )

            superseded = [
                other
                for other in await self.alist(ArtifactState.RELEASED)
                if other.version != version
            ]
            await self._transition(artifact, ArtifactState.RELEASED)
            for other in superseded:
                await self._transition(other, ArtifactState.DEPRECATED)
            await self._apply_retention()
            return artifact

    async def amark_rolled_back(self, version: str) -> Artifact:
        """Mark *version* ``rolled_back``; already rolled back is a no-op."""
        async with self._lock:
            artifact = await self._require(version)
            if artifact.state != ArtifactState.ROLLED_BACK:
                await self._transition(artifact, ArtifactState.ROLLED_BACK)
            return artifact

    async def aapply_retention(self) -> list[str]:
        """Purge deprecated versions beyond the retention count; returns purged versions."""
        async with self._lock:
            return await self._apply_retention()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def aget(self, version: str) -> Artifact:
        """Get an artifact by version.

        Raises
        ------
        ResourceNotFoundError
            If the version is unknown
        """
        return await self._require(version)

    async def alist(self, state: ArtifactState | str | None = None) -> list[Artifact]:
        """List artifacts oldest first, optionally filtered by state."""
        filters = {"state": str(state)} if state else None
        docs = await self._storage.aquery(ARTIFACTS_COLLECTION, filters)
        artifacts = [artifact_from_storage(doc) for doc in docs]
        artifacts.sort(key=lambda a: a.created_at)
        return artifacts

    async def areleased(self) -> Artifact | None:
        """The currently released artifact, if any."""
        released = await self.alist(ArtifactState.RELEASED)
        return released[-1] if released else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply_retention(self) -> list[str]:
        deprecated = await self.alist(ArtifactState.DEPRECATED)
        deprecated.sort(key=lambda a: a.updated_at)
        excess = len(deprecated) - self.retention
        purged: list[str] = []
        for artifact in deprecated[: max(excess, 0)]:
            await self._storage.adelete(ARTIFACTS_COLLECTION, artifact.version)
            purged.append(artifact.version)
            logger.info("Purged artifact {version} by retention", version=artifact.version)
            await self._observers.notify(ArtifactPurged(version=artifact.version))
        return purged

    async def _transition(self, artifact: Artifact, to_state: ArtifactState) -> None:
        from_state = artifact.state
        artifact.transition(to_state)
        await self._save(artifact)
        logger.info(
            "Artifact {version}: {from_state} -> {to_state}",
            version=artifact.version,
            from_state=str(from_state),
            to_state=str(to_state),
        )
        await self._observers.notify(
            ArtifactStateChanged(
                version=artifact.version, from_state=str(from_state), to_state=str(to_state)
            )
        )

    async def _require(self, version: str) -> Artifact:
        artifact = await self._load(version)
        if artifact is None:
            raise ResourceNotFoundError("artifact", version)
        return artifact

    async def _load(self, version: str) -> Artifact | None:
        try:
            data = await self._storage.aload(ARTIFACTS_COLLECTION, version)
        except (ConnectionError, OSError) as e:
            raise ArtifactPublishError(
                version, f"artifact store unreachable: {e}", retryable=True
            ) from e
        return artifact_from_storage(data) if data is not None else None

    async def _save(self, artifact: Artifact) -> None:
        try:
            await self._storage.asave(
                ARTIFACTS_COLLECTION, artifact.version, artifact_to_storage(artifact)
            )
        except (ConnectionError, OSError) as e:
            raise ArtifactPublishError(
                artifact.version, f"artifact store unreachable: {e}", retryable=True
            ) from e
