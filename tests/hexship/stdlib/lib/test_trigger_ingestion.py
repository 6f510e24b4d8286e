"""Tests for trigger verification, deduplication and lane queueing."""

from __future__ import annotations

import asyncio

import pytest

from hexship.drivers.observer_manager.local import LocalObserverManager
from hexship.kernel.domain.pipeline import PipelineDefinition
from hexship.kernel.domain.run import RunStatus
from hexship.kernel.domain.trigger import TriggerNotification
from hexship.kernel.exceptions import TriggerQueueFullError, TriggerValidationError
from hexship.kernel.orchestration.events import RunQueued
from hexship.stdlib.adapters.memory import InMemoryCollectionStorage
from hexship.stdlib.lib.run_registry import RunRegistry
from hexship.stdlib.lib.trigger_ingestion import LaneQueue, TriggerIngestion, sign_payload

SECRET = "webhook-secret"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _pipeline(name: str = "svc") -> PipelineDefinition:
    return PipelineDefinition.model_validate({
        "name": name,
        "stages": [{"id": "build"}, {"id": "test", "dependsOn": ["build"]}],
    })


def _signed(change_ref: str = "abc123", branch: str = "main", **kwargs: str) -> TriggerNotification:
    unsigned = TriggerNotification(repository="api", branch=branch, change_ref=change_ref)
    signature = sign_payload(SECRET, unsigned.canonical_payload())
    return TriggerNotification(
        repository="api", branch=branch, change_ref=change_ref, signature=signature, **kwargs
    )


@pytest.fixture
def registry() -> RunRegistry:
    return RunRegistry(InMemoryCollectionStorage())


@pytest.fixture
def observers() -> LocalObserverManager:
    return LocalObserverManager()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ingestion(
    registry: RunRegistry, observers: LocalObserverManager, clock: FakeClock
) -> TriggerIngestion:
    return TriggerIngestion(
        registry,
        observers,
        pipelines={"svc": _pipeline()},
        secret=SECRET,
        dedup_window_seconds=60,
        queue_size=10,
        clock=clock,
    )


class TestVerification:
    """Signature and field checks."""

    def test_valid_signature(self, ingestion: TriggerIngestion) -> None:
        ingestion.verify(_signed())

    def test_prefixed_signature(self, ingestion: TriggerIngestion) -> None:
        notification = _signed()
        prefixed = TriggerNotification(
            repository="api",
            branch="main",
            change_ref="abc123",
            signature=f"sha256={notification.signature}",
        )
        ingestion.verify(prefixed)

    def test_tampered_payload(self, ingestion: TriggerIngestion) -> None:
        good = _signed()
        tampered = TriggerNotification(
            repository="api", branch="main", change_ref="evil", signature=good.signature
        )
        with pytest.raises(TriggerValidationError, match="signature mismatch"):
            ingestion.verify(tampered)

    def test_missing_signature(self, ingestion: TriggerIngestion) -> None:
        with pytest.raises(TriggerValidationError, match="signature mismatch"):
            ingestion.verify(TriggerNotification(repository="api", branch="main", change_ref="x"))

    @pytest.mark.parametrize("field", ["repository", "branch", "change_ref"])
    def test_blank_field(self, ingestion: TriggerIngestion, field: str) -> None:
        values = {"repository": "api", "branch": "main", "change_ref": "abc", field: "  "}
        with pytest.raises(TriggerValidationError, match=f"'{field}' must not be blank"):
            ingestion.verify(TriggerNotification(**values))

    def test_no_secret_skips_verification(
        self, registry: RunRegistry, observers: LocalObserverManager
    ) -> None:
        ingestion = TriggerIngestion(registry, observers, pipelines={"svc": _pipeline()})
        ingestion.verify(TriggerNotification(repository="api", branch="main", change_ref="x"))

    def test_negative_window_rejected(
        self, registry: RunRegistry, observers: LocalObserverManager
    ) -> None:
        with pytest.raises(ValueError, match="dedup_window_seconds"):
            TriggerIngestion(registry, observers, pipelines={}, dedup_window_seconds=-1)


class TestPipelineResolution:
    def test_single_pipeline_is_default(self, ingestion: TriggerIngestion) -> None:
        assert ingestion.resolve_pipeline(None).name == "svc"

    def test_unknown_pipeline(self, ingestion: TriggerIngestion) -> None:
        with pytest.raises(TriggerValidationError, match="unknown pipeline"):
            ingestion.resolve_pipeline("other")

    def test_ambiguous_without_default(
        self, registry: RunRegistry, observers: LocalObserverManager
    ) -> None:
        ingestion = TriggerIngestion(
            registry, observers, pipelines={"a": _pipeline("a"), "b": _pipeline("b")}
        )
        with pytest.raises(TriggerValidationError):
            ingestion.resolve_pipeline(None)

    def test_explicit_default(
        self, registry: RunRegistry, observers: LocalObserverManager
    ) -> None:
        ingestion = TriggerIngestion(
            registry,
            observers,
            pipelines={"a": _pipeline("a"), "b": _pipeline("b")},
            default_pipeline="b",
        )
        assert ingestion.resolve_pipeline(None).name == "b"
        assert ingestion.resolve_pipeline("a").name == "a"


class TestIngestion:
    """Admission, deduplication and capacity."""

    @pytest.mark.asyncio()
    async def test_creates_and_queues_run(
        self,
        ingestion: TriggerIngestion,
        registry: RunRegistry,
        observers: LocalObserverManager,
    ) -> None:
        queued: list[RunQueued] = []
        observers.register(queued.append, event_types=RunQueued)

        receipt = await ingestion.aingest(_signed())

        assert not receipt.duplicate
        assert receipt.status_code == 202
        run = await registry.aget(receipt.run_id)
        assert run.status == RunStatus.RUNNING
        assert run.pipeline_name == "svc"
        assert len(ingestion.queue) == 1
        assert queued[0].run_id == receipt.run_id

    @pytest.mark.asyncio()
    async def test_duplicate_within_window(
        self, ingestion: TriggerIngestion, registry: RunRegistry
    ) -> None:
        first = await ingestion.aingest(_signed())
        second = await ingestion.aingest(_signed())

        assert second.duplicate
        assert second.run_id == first.run_id
        assert second.status_code == 409
        assert len(await registry.alist()) == 1
        assert len(ingestion.queue) == 1

    @pytest.mark.asyncio()
    async def test_concurrent_duplicates_create_one_run(
        self, ingestion: TriggerIngestion, registry: RunRegistry
    ) -> None:
        receipts = await asyncio.gather(*(ingestion.aingest(_signed()) for _ in range(5)))

        assert len({r.run_id for r in receipts}) == 1
        assert sum(not r.duplicate for r in receipts) == 1
        assert len(await registry.alist()) == 1

    @pytest.mark.asyncio()
    async def test_window_expiry_admits_again(
        self, ingestion: TriggerIngestion, clock: FakeClock
    ) -> None:
        first = await ingestion.aingest(_signed())
        clock.now += 61

        again = await ingestion.aingest(_signed())

        assert not again.duplicate
        assert again.run_id != first.run_id

    @pytest.mark.asyncio()
    async def test_different_change_is_not_a_duplicate(
        self, ingestion: TriggerIngestion
    ) -> None:
        first = await ingestion.aingest(_signed("abc123"))
        second = await ingestion.aingest(_signed("def456"))
        assert not second.duplicate
        assert second.run_id != first.run_id

    @pytest.mark.asyncio()
    async def test_invalid_signature_creates_nothing(
        self, ingestion: TriggerIngestion, registry: RunRegistry
    ) -> None:
        bad = TriggerNotification(
            repository="api", branch="main", change_ref="abc", signature="0" * 64
        )
        with pytest.raises(TriggerValidationError):
            await ingestion.aingest(bad)
        assert await registry.alist() == []

    @pytest.mark.asyncio()
    async def test_queue_full(
        self, registry: RunRegistry, observers: LocalObserverManager
    ) -> None:
        ingestion = TriggerIngestion(
            registry, observers, pipelines={"svc": _pipeline()}, queue_size=1
        )
        await ingestion.aingest(
            TriggerNotification(repository="api", branch="main", change_ref="one")
        )

        with pytest.raises(TriggerQueueFullError):
            await ingestion.aingest(
                TriggerNotification(repository="api", branch="main", change_ref="two")
            )
        assert len(await registry.alist()) == 1

    @pytest.mark.asyncio()
    async def test_failed_registration_releases_key(
        self, observers: LocalObserverManager
    ) -> None:
        storage = InMemoryCollectionStorage()
        registry = RunRegistry(storage)
        ingestion = TriggerIngestion(registry, observers, pipelines={"svc": _pipeline()})
        notification = TriggerNotification(repository="api", branch="main", change_ref="abc")
        storage.available = False

        with pytest.raises(ConnectionError):
            await ingestion.aingest(notification)

        storage.available = True
        receipt = await ingestion.aingest(notification)
        assert not receipt.duplicate


class TestLaneQueue:
    """Per-branch FIFO lanes."""

    @pytest.mark.asyncio()
    async def test_lane_is_busy_until_task_done(self) -> None:
        queue: LaneQueue[str] = LaneQueue(maxsize=10)
        queue.put_nowait(("api", "main"), "r1")
        queue.put_nowait(("api", "main"), "r2")
        queue.put_nowait(("api", "dev"), "r3")

        assert await queue.get() == (("api", "main"), "r1")
        assert await queue.get() == (("api", "dev"), "r3")

        pending = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not pending.done()

        queue.task_done(("api", "main"))
        assert await asyncio.wait_for(pending, timeout=1) == (("api", "main"), "r2")

    def test_capacity(self) -> None:
        queue: LaneQueue[str] = LaneQueue(maxsize=1)
        queue.put_nowait("lane", "r1")
        assert queue.full()
        with pytest.raises(TriggerQueueFullError):
            queue.put_nowait("lane", "r2")
        queue.put_nowait("lane", "r2", force=True)
        assert len(queue) == 2

    @pytest.mark.asyncio()
    async def test_discard(self) -> None:
        queue: LaneQueue[str] = LaneQueue(maxsize=5)
        queue.put_nowait("a", "r1")
        queue.put_nowait("b", "r2")

        assert queue.discard("r1")
        assert not queue.discard("missing")
        assert len(queue) == 1
        assert await queue.get() == ("b", "r2")

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError, match="maxsize"):
            LaneQueue(maxsize=0)
