"""TriggerIngestion lib - authenticated, deduplicated run admission.

A change notification becomes at most one run:

1. the signature is checked (HMAC-SHA256 over the canonical payload)
2. ``(repository, branch, change_ref)`` is looked up in the dedup window;
   a repeat returns the original run id with ``duplicate=True``
3. a new run is created in ``running`` state, persisted, and queued

The admission queue is bounded and keeps one FIFO lane per
``(repository, branch)``: workers never take two runs of the same lane at
once, so runs for one branch execute in arrival order.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from collections import deque
from typing import TYPE_CHECKING, Generic, TypeVar

from hexship.kernel.domain.run import Run
from hexship.kernel.domain.trigger import TriggerReceipt
from hexship.kernel.exceptions import TriggerQueueFullError, TriggerValidationError
from hexship.kernel.logging import get_logger
from hexship.kernel.orchestration.events import RunQueued
from hexship.stdlib.lib_base import HexShipLib

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Mapping

    from hexship.kernel.domain.pipeline import PipelineDefinition
    from hexship.kernel.domain.trigger import TriggerNotification
    from hexship.kernel.ports.observer_manager import ObserverManager
    from hexship.stdlib.lib.run_registry import RunRegistry

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DEDUP_WINDOW_SECONDS = 300.0
DEFAULT_QUEUE_SIZE = 100
SIGNATURE_PREFIX = "sha256="


def sign_payload(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 signature of *payload*, as senders compute it."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class LaneQueue(Generic[T]):
    """Bounded queue with FIFO lanes; a lane is busy until ``task_done``.

    Examples
    --------
    >>> queue = LaneQueue[str](maxsize=2)
    >>> queue.put_nowait(("repo", "main"), "run-1")
    >>> len(queue)
    1
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self._lanes: dict[Hashable, deque[T]] = {}
        self._ready: deque[Hashable] = deque()
        self._busy: set[Hashable] = set()
        self._size = 0
        self._wakeup = asyncio.Event()

    def __len__(self) -> int:
        return self._size

    def full(self) -> bool:
        return self._size >= self.maxsize

    def put_nowait(self, lane: Hashable, item: T, *, force: bool = False) -> None:
        """Append *item* to *lane*; ``force`` ignores the capacity.

        Raises
        ------
        TriggerQueueFullError
            If ``maxsize`` items are already waiting
        """
        if self.full() and not force:
            raise TriggerQueueFullError(self.maxsize)
        self._lanes.setdefault(lane, deque()).append(item)
        self._size += 1
        if lane not in self._busy and lane not in self._ready:
            self._ready.append(lane)
        self._wakeup.set()

    async def get(self) -> tuple[Hashable, T]:
        """Wait for the head of the next idle lane and mark that lane busy."""
        while not self._ready:
            self._wakeup.clear()
            await self._wakeup.wait()
        lane = self._ready.popleft()
        items = self._lanes[lane]
        item = items.popleft()
        if not items:
            del self._lanes[lane]
        self._size -= 1
        self._busy.add(lane)
        return lane, item

    def task_done(self, lane: Hashable) -> None:
        """Release *lane* so its next item can be taken."""
        self._busy.discard(lane)
        if lane in self._lanes and lane not in self._ready:
            self._ready.append(lane)
            self._wakeup.set()

    def discard(self, item: T) -> bool:
        """Remove a waiting *item*; returns False if it is not queued."""
        for lane, items in list(self._lanes.items()):
            if item in items:
                items.remove(item)
                self._size -= 1
                if not items:
                    del self._lanes[lane]
                    if lane in self._ready:
                        self._ready.remove(lane)
                return True
        return False


class TriggerIngestion(HexShipLib):
    """Validates change notifications and admits runs.

    Parameters
    ----------
    registry : RunRegistry
        Persists the created run.
    observer_manager : ObserverManager
        Receives :class:`RunQueued` events.
    pipelines : Mapping[str, PipelineDefinition]
        Known pipelines by name; the mapping is read live, so pipelines
        registered later are accepted.
    default_pipeline : str | None
        Pipeline used when a notification does not name one. With a single
        registered pipeline that one is used.
    secret : str | None
        Shared HMAC secret. ``None`` disables verification (local use).
    dedup_window_seconds : float
        How long a ``(repository, branch, change_ref)`` key is remembered.
    queue_size : int
        Capacity of the admission queue.
    clock : Callable[[], float]
        Monotonic clock for the dedup window.
    """

    def __init__(
        self,
        registry: RunRegistry,
        observer_manager: ObserverManager,
        *,
        pipelines: Mapping[str, PipelineDefinition],
        default_pipeline: str | None = None,
        secret: str | None = None,
        dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if dedup_window_seconds < 0:
            raise ValueError("dedup_window_seconds must be zero or positive")
        self._registry = registry
        self._observers = observer_manager
        self._pipelines = pipelines
        self._default_pipeline = default_pipeline
        self._secret = secret or None
        self.dedup_window_seconds = dedup_window_seconds
        self._clock = clock
        self._seen: dict[tuple[str, str, str], tuple[str, float]] = {}
        self.queue: LaneQueue[str] = LaneQueue(queue_size)
        self._warned_unsigned = False
        self._reserved = 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def verify(self, notification: TriggerNotification) -> None:
        """Check required fields and the signature.

        Raises
        ------
        TriggerValidationError
            On a blank field or a signature mismatch
        """
        for field_name in ("repository", "branch", "change_ref"):
            if not getattr(notification, field_name).strip():
                raise TriggerValidationError(f"'{field_name}' must not be blank")

        if self._secret is None:
            if not self._warned_unsigned:
                logger.warning("No trigger secret configured; signatures are not verified")
                self._warned_unsigned = True
            return

        provided = notification.signature.strip()
        provided = provided.removeprefix(SIGNATURE_PREFIX).lower()
        expected = sign_payload(self._secret, notification.canonical_payload())
        if not provided or not hmac.compare_digest(provided, expected):
            raise TriggerValidationError("signature mismatch")

    def resolve_pipeline(self, name: str | None) -> PipelineDefinition:
        resolved = name or self._default_pipeline
        if resolved is None and len(self._pipelines) == 1:
            resolved = next(iter(self._pipelines))
        if resolved is None or resolved not in self._pipelines:
            raise TriggerValidationError(
                f"unknown pipeline {resolved!r}; known: {', '.join(sorted(self._pipelines))}"
            )
        return self._pipelines[resolved]

    async def aingest(self, notification: TriggerNotification) -> TriggerReceipt:
        """Admit *notification*, creating and queueing at most one run.

        Raises
        ------
        TriggerValidationError
            On a bad signature, a blank field or an unknown pipeline
        TriggerQueueFullError
            If the admission queue is at capacity
        """
        self.verify(notification)
        pipeline = self.resolve_pipeline(notification.pipeline)
        context = notification.context

        now = self._clock()
        self._expire(now)
        if (seen := self._seen.get(context.key)) is not None:
            run_id, _ = seen
            logger.info(
                "Duplicate trigger for {repository}@{branch} ({change_ref}); run {run_id}",
                repository=context.repository,
                branch=context.branch,
                change_ref=context.change_ref,
                run_id=run_id,
            )
            return TriggerReceipt(run_id=run_id, duplicate=True)

        if len(self.queue) + self._reserved >= self.queue.maxsize:
            raise TriggerQueueFullError(self.queue.maxsize)

        run = Run.for_stages(pipeline.name, context, pipeline.stage_ids)
        # Claim the key before awaiting so a concurrent repeat sees it.
        self._seen[context.key] = (run.run_id, now + self.dedup_window_seconds)
        self._reserved += 1
        try:
            await self._registry.register(run)
        except Exception:
            self._seen.pop(context.key, None)
            raise
        finally:
            self._reserved -= 1
        self.queue.put_nowait(context.lane, run.run_id, force=True)

        logger.info(
            "Queued run {run_id} for {repository}@{branch} ({change_ref})",
            run_id=run.run_id,
            repository=context.repository,
            branch=context.branch,
            change_ref=context.change_ref,
        )
        await self._observers.notify(
            RunQueued(
                run_id=run.run_id,
                pipeline_name=pipeline.name,
                repository=context.repository,
                branch=context.branch,
                change_ref=context.change_ref,
            )
        )
        return TriggerReceipt(run_id=run.run_id)

    def requeue(self, run: Run) -> None:
        """Put a recovered run back in its lane (bypasses capacity)."""
        self.queue.put_nowait(run.trigger.lane, run.run_id, force=True)

    def _expire(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]
