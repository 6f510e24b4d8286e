"""PipelineEngine - the composition root that drives runs from trigger to release.

The engine wires the libs together and owns the worker pool::

    notification -> TriggerIngestion -> lane queue -> worker -> StageScheduler
                                                                  |
                      CapabilityDispatcher <----------------------+
                      |-- stage adapters (build, analyze, package, custom)
                      |-- GateEvaluator     (analyze, gate)
                      |-- ArtifactManager   (package, deploy)
                      +-- RolloutController (deploy)

Every transition is persisted through :class:`RunRegistry`, so a restarted
engine resumes interrupted runs and fails interrupted rollouts safe before
accepting new work.

Examples
--------
Example usage::

    engine = PipelineEngine(config, pipelines=load_pipelines("pipelines.yaml"))
    async with engine:
        receipt = await engine.submit(notification)
        run = await engine.wait_for(receipt.run_id, timeout=600)
        print(run.status, run.exit_code())
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from hexship.drivers.observer_manager.local import LocalObserverManager
from hexship.kernel.config.models import HexShipConfig
from hexship.kernel.domain.pipeline import StageCapability
from hexship.kernel.domain.run import Run, RunStatus, StageStatus
from hexship.kernel.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    ResolveError,
    ResourceNotFoundError,
)
from hexship.kernel.logging import get_logger
from hexship.kernel.orchestration.capability_dispatcher import CapabilityDispatcher
from hexship.kernel.orchestration.events import RunCancelled
from hexship.kernel.orchestration.scheduler import StageScheduler
from hexship.kernel.resolver import instantiate
from hexship.kernel.utils.timer import utcnow
from hexship.stdlib.lib.artifact_manager import ArtifactManager
from hexship.stdlib.lib.gate_evaluator import GateEvaluator
from hexship.stdlib.lib.rollout_controller import RolloutController
from hexship.stdlib.lib.run_registry import RunRegistry
from hexship.stdlib.lib.trigger_ingestion import TriggerIngestion

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Iterable, Mapping

    from hexship.kernel.config.models import StorageConfig
    from hexship.kernel.domain.artifact import Artifact, ArtifactState
    from hexship.kernel.domain.deployment import Deployment
    from hexship.kernel.domain.gate import BypassAuditEntry, GateDecision
    from hexship.kernel.domain.pipeline import PipelineDefinition, StageDefinition
    from hexship.kernel.domain.run import TriggerContext
    from hexship.kernel.domain.trigger import TriggerNotification, TriggerReceipt
    from hexship.kernel.ports.data_store import SupportsCollectionStorage
    from hexship.kernel.ports.deployment_target import DeploymentTarget
    from hexship.kernel.ports.observer_manager import ObserverManager
    from hexship.kernel.ports.stage_adapter import StageAdapter
    from hexship.stdlib.lib_base import HexShipLib

logger = get_logger(__name__)

# Capabilities whose work is done by the engine itself, not by an adapter
_BUILTIN_CAPABILITIES = frozenset({StageCapability.GATE, StageCapability.DEPLOY})
DEFAULT_ADAPTER_KEY = "default"
OPERATOR_CANCEL_REASON = "cancelled by operator"
INTERRUPTED_ROLLOUT_ERROR = "RolloutInterrupted"


@dataclass(slots=True)
class RecoveryReport:
    """What :meth:`PipelineEngine.recover` did on startup."""

    reverted_environments: list[str] = field(default_factory=list)
    resumed_runs: list[str] = field(default_factory=list)
    failed_runs: list[str] = field(default_factory=list)


def create_storage(config: StorageConfig) -> SupportsCollectionStorage:
    """Build the storage adapter named by the storage config."""
    params: dict[str, Any] = {"db_path": config.path} if config.backend == "sqlite" else {}
    return instantiate(config.backend, params)


class PipelineEngine:
    """Runs pipelines end to end.

    Parameters
    ----------
    config : HexShipConfig | None
        Engine configuration; defaults apply when omitted.
    pipelines : Iterable[PipelineDefinition]
        Pipelines to register up front.
    storage : SupportsCollectionStorage | None
        Overrides the storage built from ``config.storage``.
    deployment_target : DeploymentTarget | None
        Overrides the target built from ``config.deployment_target``.
    stage_adapters : Mapping[str, StageAdapter] | None
        Adapter instances by capability name (or ``"default"``), consulted
        after the pipeline's own adapter references.
    observer_manager : ObserverManager | None
        Receives every run, stage, gate, artifact and rollout event.
    clock : Callable[[], float]
        Monotonic clock for the trigger dedup window.
    """

    def __init__(
        self,
        config: HexShipConfig | None = None,
        *,
        pipelines: Iterable[PipelineDefinition] = (),
        storage: SupportsCollectionStorage | None = None,
        deployment_target: DeploymentTarget | None = None,
        stage_adapters: Mapping[str, StageAdapter] | None = None,
        observer_manager: ObserverManager | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or HexShipConfig()
        self.observers: ObserverManager = observer_manager or LocalObserverManager()
        self.storage = storage if storage is not None else create_storage(self.config.storage)
        target_config = self.config.deployment_target
        self.target: DeploymentTarget = (
            deployment_target
            if deployment_target is not None
            else instantiate(target_config.name, target_config.params)
        )

        self._pipelines: dict[str, PipelineDefinition] = {}
        self._stage_adapters = dict(stage_adapters or {})
        self._adapter_cache: dict[str, StageAdapter] = {}

        self.registry = RunRegistry(self.storage)
        self.gate = GateEvaluator(
            self.storage,
            self.observers,
            bypass_token_digests=self.config.gate.bypass_token_digests,
        )
        self.artifacts = ArtifactManager(
            self.storage, self.observers, retention=self.config.artifact.retention
        )
        self.rollouts = RolloutController(
            self.storage,
            self.target,
            self.observers,
            default_policy=self.config.rollout.to_policy(),
        )
        trigger = self.config.trigger
        self.ingestion = TriggerIngestion(
            self.registry,
            self.observers,
            pipelines=self._pipelines,
            default_pipeline=trigger.default_pipeline,
            secret=trigger.secret,
            dedup_window_seconds=trigger.dedup_window_seconds,
            queue_size=trigger.queue_size,
            clock=clock,
        )
        self.dispatcher = CapabilityDispatcher(
            self._pipelines, self._adapter_for, self.gate, self.artifacts, self.rollouts
        )
        scheduler = self.config.scheduler
        self.scheduler = StageScheduler(
            self.dispatcher,
            self.registry,
            self.observers,
            max_concurrent_stages=scheduler.max_concurrent_stages,
            max_concurrent_stages_per_run=scheduler.max_concurrent_stages_per_run,
            default_stage_timeout=scheduler.default_stage_timeout,
        )

        self._libs: list[HexShipLib] = [
            self.registry,
            self.gate,
            self.artifacts,
            self.rollouts,
            self.ingestion,
        ]
        self._workers: list[asyncio.Task[None]] = []
        self._started = False
        self._resume: set[str] = set()
        self._dispatching: set[str] = set()
        self._cancel_requests: dict[str, str] = {}
        self._done: dict[str, asyncio.Event] = {}

        for pipeline in pipelines:
            self.register_pipeline(pipeline)

    # ------------------------------------------------------------------
    # Pipelines & adapters
    # ------------------------------------------------------------------

    @property
    def pipelines(self) -> Mapping[str, PipelineDefinition]:
        return self._pipelines

    def register_pipeline(self, pipeline: PipelineDefinition) -> None:
        """Register *pipeline*, resolving every adapter it needs up front.

        Raises
        ------
        ConfigurationError
            If a stage has no adapter or its adapter cannot be built
        """
        for stage in pipeline.stages:
            if stage.capability not in _BUILTIN_CAPABILITIES:
                self._adapter_for(pipeline, stage)
        if pipeline.name in self._pipelines:
            logger.info("Replacing pipeline '{name}'", name=pipeline.name)
        self._pipelines[pipeline.name] = pipeline
        logger.debug(
            "Registered pipeline '{name}' with {count} stages",
            name=pipeline.name,
            count=len(pipeline.stages),
        )

    def _adapter_for(self, pipeline: PipelineDefinition, stage: StageDefinition) -> StageAdapter:
        capability = str(stage.capability)
        ref = stage.adapter or pipeline.adapters.get(stage.capability)
        if ref is not None:
            name, params = ref.name, ref.params
        else:
            injected = self._stage_adapters.get(capability) or self._stage_adapters.get(
                DEFAULT_ADAPTER_KEY
            )
            if injected is not None:
                return injected
            configured = self.config.adapters.get(capability) or self.config.adapters.get(
                DEFAULT_ADAPTER_KEY
            )
            if configured is None:
                raise ConfigurationError(
                    f"pipeline '{pipeline.name}'",
                    f"no adapter configured for capability '{capability}' (stage '{stage.id}')",
                )
            name, params = configured.name, configured.params

        key = f"{name}:{json.dumps(params, sort_keys=True, default=str)}"
        if key not in self._adapter_cache:
            try:
                self._adapter_cache[key] = instantiate(name, params)
            except ResolveError as e:
                raise ConfigurationError(f"stage '{stage.id}'", str(e)) from e
        return self._adapter_cache[key]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, workers: int | None = None, recover: bool = True) -> RecoveryReport:
        """Set up the libs, recover interrupted work, then start the workers.

        Parameters
        ----------
        workers : int | None
            Worker task count; ``config.scheduler.workers`` when omitted.
            ``0`` starts no workers (runs execute only through :meth:`run_once`).
        recover : bool
            Whether to recover rollouts and runs left over by a previous process.
        """
        if self._started:
            return RecoveryReport()
        for lib in self._libs:
            await lib.asetup()
        self._started = True

        report = await self.recover() if recover else RecoveryReport()
        count = self.config.scheduler.workers if workers is None else workers
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"hexship-worker-{index}")
            for index in range(count)
        ]
        logger.info(
            "Engine started: {workers} workers, {pipelines} pipelines",
            workers=count,
            pipelines=len(self._pipelines),
        )
        return report

    async def stop(self) -> None:
        """Stop the workers and release resources.

        Runs still executing stay ``running`` in storage and are resumed by
        the next :meth:`start`.
        """
        if not self._started:
            return
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        for lib in reversed(self._libs):
            await lib.ateardown()
        for resource in (self.target, self.storage):
            if (close := getattr(resource, "aclose", None)) is not None:
                await close()
        self._started = False
        logger.info("Engine stopped")

    async def __aenter__(self) -> PipelineEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Admission & execution
    # ------------------------------------------------------------------

    async def submit(self, notification: TriggerNotification) -> TriggerReceipt:
        """Ingest a change notification (see :class:`TriggerIngestion`)."""
        return await self.ingestion.aingest(notification)

    async def run_once(self, pipeline: PipelineDefinition, context: TriggerContext) -> Run:
        """Execute one run inline, bypassing the queue.

        Used by ``hexship run``; registers *pipeline* when needed and starts
        the engine without workers when it is not running.
        """
        if self._pipelines.get(pipeline.name) is not pipeline:
            self.register_pipeline(pipeline)
        if not self._started:
            await self.start(workers=0, recover=False)
        run = Run.for_stages(pipeline.name, context, pipeline.stage_ids)
        self._dispatching.add(run.run_id)
        await self.registry.register(run)
        return await self._execute(pipeline, run, resumed=False)

    async def wait_for(self, run_id: str, timeout: float | None = None) -> Run:
        """Wait until *run_id* is terminal and return it.

        Raises
        ------
        ResourceNotFoundError
            If the run does not exist
        TimeoutError
            If the run is still active after *timeout* seconds
        """
        event = self._done.setdefault(run_id, asyncio.Event())
        try:
            run = await self.registry.aget(run_id)
        except ResourceNotFoundError:
            self._done.pop(run_id, None)
            raise
        if not run.status.terminal:
            async with asyncio.timeout(timeout):
                await event.wait()
            run = await self.registry.aget(run_id)
        return run

    async def _worker(self, index: int) -> None:
        queue = self.ingestion.queue
        while True:
            lane, run_id = await queue.get()
            self._dispatching.add(run_id)
            try:
                await self._dispatch(lane, run_id)
            except Exception as e:
                logger.exception(
                    "Worker {index} failed on run {run_id}: {error}",
                    index=index,
                    run_id=run_id,
                    error=e,
                )
            finally:
                self._dispatching.discard(run_id)
                self._cancel_requests.pop(run_id, None)
                queue.task_done(lane)

    async def _dispatch(self, lane: Hashable, run_id: str) -> None:
        run = await self.registry.aget(run_id)
        if run.status.terminal:
            self._signal_done(run_id)
            return
        pipeline = self._pipelines.get(run.pipeline_name)
        if pipeline is None:
            await self._abandon(run, f"pipeline '{run.pipeline_name}' is not registered")
            return
        resumed = run_id in self._resume
        self._resume.discard(run_id)
        logger.debug("Dispatching run {run_id} from lane {lane}", run_id=run_id, lane=lane)
        await self._execute(pipeline, run, resumed=resumed)

    async def _execute(self, pipeline: PipelineDefinition, run: Run, *, resumed: bool) -> Run:
        try:
            if (reason := self._cancel_requests.pop(run.run_id, None)) is not None:
                await self._cancel_unstarted(run, reason)
                return run
            return await self.scheduler.execute(pipeline, run, resumed=resumed)
        finally:
            self._cancel_requests.pop(run.run_id, None)
            self._dispatching.discard(run.run_id)
            self.dispatcher.forget(run.run_id)
            self._signal_done(run.run_id)

    def _signal_done(self, run_id: str) -> None:
        if (event := self._done.pop(run_id, None)) is not None:
            event.set()

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    async def cancel_run(self, run_id: str, reason: str = OPERATOR_CANCEL_REASON) -> Run:
        """Cancel a queued or executing run.

        A queued run is cancelled immediately. An executing run stops
        cooperatively: stages in flight are interrupted (a deploy stage first
        reverts its environment) and the rest are skipped.

        Raises
        ------
        ResourceNotFoundError
            If the run does not exist
        InvalidTransitionError
            If the run already finished
        """
        run = await self.registry.aget(run_id)
        if run.status.terminal:
            raise InvalidTransitionError(f"Run '{run_id}' is already {run.status}")

        if self.scheduler.cancel(run_id, reason):
            logger.info("Cancellation requested for run {run_id}", run_id=run_id)
        elif run_id in self._dispatching:
            self._cancel_requests[run_id] = reason
        else:
            self.ingestion.queue.discard(run_id)
            await self._cancel_unstarted(run, reason)
        return run

    async def _cancel_unstarted(self, run: Run, reason: str) -> None:
        now = utcnow()
        for result in run.stages.values():
            if not result.status.terminal:
                result.status = StageStatus.SKIPPED
                result.skip_reason = reason
                result.ended_at = now
        run.status = RunStatus.CANCELLED
        run.error = reason
        run.completed_at = now
        await self.registry.record(run, "run_cancelled")
        logger.info("Run {run_id} cancelled before it started", run_id=run.run_id)
        await self.observers.notify(RunCancelled(run_id=run.run_id, reason=reason))
        self._signal_done(run.run_id)

    async def _abandon(self, run: Run, reason: str) -> None:
        now = utcnow()
        for result in run.stages.values():
            if not result.status.terminal:
                result.status = StageStatus.SKIPPED
                result.skip_reason = reason
                result.ended_at = now
        run.status = RunStatus.FAILED
        run.error = reason
        run.completed_at = now
        await self.registry.record(run, "run_abandoned")
        logger.error("Run {run_id} abandoned: {reason}", run_id=run.run_id, reason=reason)
        self._signal_done(run.run_id)

    async def override_gate(
        self, run_id: str, token: str, actor: str, reason: str = ""
    ) -> GateDecision | None:
        """Apply an authorized gate bypass to an unfinished run.

        Returns
        -------
        GateDecision | None
            The updated decision, or None when the gate was not evaluated yet
            (the bypass is applied at evaluation).

        Raises
        ------
        ResourceNotFoundError
            If the run does not exist
        InvalidTransitionError
            If the run already finished
        GateOverrideError
            If the token is not authorized
        """
        run = await self.registry.aget(run_id)
        if run.status.terminal:
            raise InvalidTransitionError(
                f"Run '{run_id}' is already {run.status}; its gate can no longer be overridden"
            )
        decision = await self.gate.aoverride(run_id, token, actor, reason)
        await self.registry.record(run, "gate_overridden")
        return decision

    async def force_rollback(self, environment: str, reason: str = "manual rollback") -> Deployment:
        """Revert *environment* to its previous version.

        The reverted version is marked ``rolled_back``. Errors are those of
        :meth:`RolloutController.aforce_rollback`.
        """
        deployment, reverted = await self.rollouts.aforce_rollback(environment, reason)
        if reverted is not None:
            await self._mark_rolled_back(reverted)
        return deployment

    async def _mark_rolled_back(self, version: str) -> None:
        with suppress(ResourceNotFoundError, InvalidTransitionError):
            await self.artifacts.amark_rolled_back(version)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self) -> RecoveryReport:
        """Fail interrupted rollouts safe and requeue unfinished runs.

        Rollouts found in flight are reverted to the environment's released
        version before any run resumes. A deploy stage that was executing is
        recorded as failed, since its rollout was reverted; stages that had
        not finished otherwise restart from ``pending``.
        """
        report = RecoveryReport()
        for deployment, failed_version in await self.rollouts.arecover():
            report.reverted_environments.append(deployment.environment)
            if failed_version is not None:
                await self._mark_rolled_back(failed_version)

        for run in await self.registry.aincomplete():
            pipeline = self._pipelines.get(run.pipeline_name)
            if pipeline is None:
                await self._abandon(run, f"pipeline '{run.pipeline_name}' is not registered")
                report.failed_runs.append(run.run_id)
                continue

            for stage in pipeline.stages_with(StageCapability.DEPLOY):
                result = run.stages.get(stage.id)
                if result is None or result.status not in (
                    StageStatus.RUNNING,
                    StageStatus.RETRYING,
                ):
                    continue
                result.status = StageStatus.FAILED
                result.error = (
                    f"rollout to '{stage.environment}' was interrupted by a restart "
                    "and reverted"
                )
                result.error_type = INTERRUPTED_ROLLOUT_ERROR
                result.rolled_back = True
                result.ended_at = utcnow()
                await self.registry.record(run, "stage_failed", stage.id)

            await self.gate.arestore(run.run_id)
            self._resume.add(run.run_id)
            self.ingestion.requeue(run)
            report.resumed_runs.append(run.run_id)

        if report.reverted_environments or report.resumed_runs or report.failed_runs:
            logger.warning(
                "Recovery: {envs} environment(s) reverted, {resumed} run(s) resumed, "
                "{failed} run(s) failed",
                envs=len(report.reverted_environments),
                resumed=len(report.resumed_runs),
                failed=len(report.failed_runs),
            )
        return report

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_run(self, run_id: str) -> Run:
        return await self.registry.aget(run_id)

    async def list_runs(
        self,
        status: RunStatus | str | None = None,
        limit: int = 50,
        repository: str | None = None,
    ) -> list[Run]:
        return await self.registry.alist(status=status, limit=limit, repository=repository)

    async def run_history(self, run_id: str) -> list[dict[str, Any]]:
        await self.registry.aget(run_id)
        return await self.registry.ahistory(run_id)

    async def gate_decision(self, run_id: str) -> GateDecision | None:
        with suppress(ResourceNotFoundError):
            return await self.gate.aget_decision(run_id)
        return None

    async def audit_log(self, run_id: str | None = None) -> list[BypassAuditEntry]:
        return await self.gate.aaudit_log(run_id)

    async def list_artifacts(self, state: ArtifactState | str | None = None) -> list[Artifact]:
        return await self.artifacts.alist(state)

    async def get_artifact(self, version: str) -> Artifact:
        return await self.artifacts.aget(version)

    async def get_deployment(self, environment: str) -> Deployment:
        return await self.rollouts.aget(environment)

    async def list_deployments(self) -> list[Deployment]:
        return await self.rollouts.alist()

    @property
    def queue_depth(self) -> int:
        return len(self.ingestion.queue)
