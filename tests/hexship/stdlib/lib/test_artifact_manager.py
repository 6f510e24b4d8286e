"""Tests for the artifact registry and promotion lifecycle."""

from __future__ import annotations

import pytest

from hexship.drivers.observer_manager.local import LocalObserverManager
from hexship.kernel.domain.artifact import ArtifactState
from hexship.kernel.domain.deployment import RolloutState
from hexship.kernel.domain.gate import BypassAuditEntry, GateDecision, GateVerdict
from hexship.kernel.exceptions import (
    ArtifactPublishError,
    InvalidTransitionError,
    PromotionBlockedError,
    ResourceNotFoundError,
)
from hexship.kernel.orchestration.events import ArtifactPurged, ArtifactStateChanged
from hexship.stdlib.adapters.memory import InMemoryCollectionStorage
from hexship.stdlib.lib.artifact_manager import ArtifactManager


def _decision(verdict: GateVerdict, *, bypassed: bool = False) -> GateDecision:
    bypass = None
    if bypassed:
        bypass = BypassAuditEntry(
            run_id="run-1",
            actor="alice",
            token_digest="0" * 64,
            reason="hotfix",
            waived_conditions=("bugs <= 0",),
            verdict_before=verdict,
        )
    return GateDecision(run_id="run-1", verdict=verdict, bypass=bypass)


PASS = _decision(GateVerdict.PASS)


@pytest.fixture
def storage() -> InMemoryCollectionStorage:
    return InMemoryCollectionStorage()


@pytest.fixture
def observers() -> LocalObserverManager:
    return LocalObserverManager()


@pytest.fixture
def manager(
    storage: InMemoryCollectionStorage, observers: LocalObserverManager
) -> ArtifactManager:
    return ArtifactManager(storage, observers, retention=2)


async def _release(manager: ArtifactManager, version: str) -> None:
    await manager.aregister(version, f"registry/app:{version}", f"run-{version}")
    await manager.apromote(version, gate=PASS, rollout_state=RolloutState.HEALTHY)


class TestRegistration:
    @pytest.mark.asyncio()
    async def test_register_stages_artifact(self, manager: ArtifactManager) -> None:
        artifact = await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        assert artifact.state == ArtifactState.STAGED
        assert (await manager.aget("1.0.0")).content_ref == "registry/app:1.0.0"

    @pytest.mark.asyncio()
    async def test_same_content_is_idempotent(self, manager: ArtifactManager) -> None:
        first = await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")
        second = await manager.aregister("1.0.0", "registry/app:1.0.0", "run-2")

        assert second.run_id == first.run_id
        assert len(await manager.alist()) == 1

    @pytest.mark.asyncio()
    async def test_different_content_conflicts(self, manager: ArtifactManager) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        with pytest.raises(ArtifactPublishError) as exc_info:
            await manager.aregister("1.0.0", "registry/app:other", "run-2")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio()
    async def test_unreachable_store_is_retryable(
        self, manager: ArtifactManager, storage: InMemoryCollectionStorage
    ) -> None:
        storage.available = False

        with pytest.raises(ArtifactPublishError) as exc_info:
            await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio()
    async def test_unknown_version(self, manager: ArtifactManager) -> None:
        with pytest.raises(ResourceNotFoundError):
            await manager.aget("9.9.9")


class TestPromotion:
    """Promotion needs a permissive gate and a Healthy rollout."""

    @pytest.mark.asyncio()
    async def test_promote_releases(self, manager: ArtifactManager) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        artifact = await manager.apromote(
            "1.0.0", gate=PASS, rollout_state=RolloutState.HEALTHY
        )

        assert artifact.state == ArtifactState.RELEASED
        assert artifact.released_at is not None
        assert (await manager.areleased()).version == "1.0.0"  # type: ignore[union-attr]

    @pytest.mark.asyncio()
    async def test_failed_gate_blocks(self, manager: ArtifactManager) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        with pytest.raises(PromotionBlockedError, match="verdict is fail"):
            await manager.apromote(
                "1.0.0", gate=_decision(GateVerdict.FAIL), rollout_state=RolloutState.HEALTHY
            )
        assert (await manager.aget("1.0.0")).state == ArtifactState.STAGED

    @pytest.mark.asyncio()
    async def test_overridden_gate_allows(self, manager: ArtifactManager) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        artifact = await manager.apromote(
            "1.0.0",
            gate=_decision(GateVerdict.FAIL, bypassed=True),
            rollout_state=RolloutState.HEALTHY,
        )

        assert artifact.state == ArtifactState.RELEASED

    @pytest.mark.asyncio()
    async def test_missing_gate_blocks(self, manager: ArtifactManager) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        with pytest.raises(PromotionBlockedError, match="not evaluated"):
            await manager.apromote("1.0.0", gate=None, rollout_state=RolloutState.HEALTHY)

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        "state", [None, RolloutState.IDLE, RolloutState.ROLLOUT_IN_PROGRESS]
    )
    async def test_unhealthy_rollout_blocks(
        self, manager: ArtifactManager, state: RolloutState | None
    ) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")

        with pytest.raises(PromotionBlockedError, match="not Healthy"):
            await manager.apromote("1.0.0", gate=PASS, rollout_state=state)

    @pytest.mark.asyncio()
    async def test_promotion_happens_once(self, manager: ArtifactManager) -> None:
        await _release(manager, "1.0.0")
        released_at = (await manager.aget("1.0.0")).released_at

        again = await manager.apromote("1.0.0", gate=PASS, rollout_state=RolloutState.HEALTHY)

        assert again.state == ArtifactState.RELEASED
        assert again.released_at == released_at

    @pytest.mark.asyncio()
    async def test_new_release_deprecates_previous(self, manager: ArtifactManager) -> None:
        await _release(manager, "1.0.0")
        await _release(manager, "1.1.0")

        assert (await manager.aget("1.0.0")).state == ArtifactState.DEPRECATED
        assert [a.version for a in await manager.alist(ArtifactState.RELEASED)] == ["1.1.0"]

    @pytest.mark.asyncio()
    async def test_rolled_back_artifact_cannot_be_promoted(
        self, manager: ArtifactManager
    ) -> None:
        await manager.aregister("1.0.0", "registry/app:1.0.0", "run-1")
        await manager.amark_rolled_back("1.0.0")

        with pytest.raises(PromotionBlockedError, match="rolled back"):
            await manager.apromote("1.0.0", gate=PASS, rollout_state=RolloutState.HEALTHY)

    def test_promotion_blocked_is_invalid_transition(self) -> None:
        assert issubclass(PromotionBlockedError, InvalidTransitionError)

    @pytest.mark.asyncio()
    async def test_state_change_events(
        self, manager: ArtifactManager, observers: LocalObserverManager
    ) -> None:
        events: list[ArtifactStateChanged] = []
        observers.register(events.append, event_types=ArtifactStateChanged)

        await _release(manager, "1.0.0")
        await _release(manager, "1.1.0")

        assert [(e.version, e.to_state) for e in events] == [
            ("1.0.0", "released"),
            ("1.1.0", "released"),
            ("1.0.0", "deprecated"),
        ]


class TestRollback:
    @pytest.mark.asyncio()
    async def test_mark_rolled_back_is_idempotent(self, manager: ArtifactManager) -> None:
        await _release(manager, "1.0.0")

        first = await manager.amark_rolled_back("1.0.0")
        second = await manager.amark_rolled_back("1.0.0")

        assert first.state == second.state == ArtifactState.ROLLED_BACK

    @pytest.mark.asyncio()
    async def test_deprecated_cannot_roll_back(self, manager: ArtifactManager) -> None:
        await _release(manager, "1.0.0")
        await _release(manager, "1.1.0")

        with pytest.raises(InvalidTransitionError):
            await manager.amark_rolled_back("1.0.0")


class TestRetention:
    @pytest.mark.asyncio()
    async def test_old_deprecated_versions_are_purged(
        self, manager: ArtifactManager, observers: LocalObserverManager
    ) -> None:
        purged: list[ArtifactPurged] = []
        observers.register(purged.append, event_types=ArtifactPurged)

        for version in ("1.0.0", "1.1.0", "1.2.0", "1.3.0"):
            await _release(manager, version)

        versions = {a.version: a.state for a in await manager.alist()}
        assert versions == {
            "1.1.0": ArtifactState.DEPRECATED,
            "1.2.0": ArtifactState.DEPRECATED,
            "1.3.0": ArtifactState.RELEASED,
        }
        assert [event.version for event in purged] == ["1.0.0"]

    @pytest.mark.asyncio()
    async def test_retention_zero_keeps_only_release(
        self, storage: InMemoryCollectionStorage, observers: LocalObserverManager
    ) -> None:
        manager = ArtifactManager(storage, observers, retention=0)
        await _release(manager, "1.0.0")
        await _release(manager, "1.1.0")

        assert [a.version for a in await manager.alist()] == ["1.1.0"]
        assert await manager.aapply_retention() == []

    def test_negative_retention_rejected(
        self, storage: InMemoryCollectionStorage, observers: LocalObserverManager
    ) -> None:
        with pytest.raises(ValueError, match="retention"):
            ArtifactManager(storage, observers, retention=-1)
