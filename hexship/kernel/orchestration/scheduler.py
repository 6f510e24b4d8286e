"""Stage scheduler - walks a run's stage graph to a terminal status.

The scheduler owns a :class:`~hexship.kernel.domain.run.Run` for its lifetime.
It repeatedly computes the *ready set* (pending stages whose dependencies
have all succeeded), dispatches ready stages as concurrent tasks bounded by a
global and a per-run semaphore, and reacts to each completion:

- success: new stages may become ready
- failure: every transitive dependent is marked ``skipped``
- gate block: the blocked stage and its dependents are marked ``skipped``
- cancellation: pending stages are skipped, in-flight ones are signalled

The run is ``succeeded`` when every mandatory stage succeeded, ``cancelled``
when cancellation was requested, and ``failed`` otherwise.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from hexship.kernel.domain.pipeline import StageCapability
from hexship.kernel.domain.run import RunStatus, StageStatus
from hexship.kernel.exceptions import StageError
from hexship.kernel.logging import get_logger, reset_correlation_id, set_correlation_id
from hexship.kernel.orchestration.cancellation import CancellationToken
from hexship.kernel.orchestration.events import (
    RunCancelled,
    RunCompleted,
    RunStarted,
    StageSkipped,
)
from hexship.kernel.orchestration.stage_executor import StageExecutor
from hexship.kernel.ports.stage_adapter import StageContext, StageOutcome
from hexship.kernel.utils.timer import Timer, utcnow

if TYPE_CHECKING:
    from hexship.kernel.domain.pipeline import PipelineDefinition, StageDefinition
    from hexship.kernel.domain.run import Run
    from hexship.kernel.orchestration.events import Event
    from hexship.kernel.ports.observer_manager import ObserverManager

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENT_STAGES = 16
DEFAULT_MAX_CONCURRENT_STAGES_PER_RUN = 4

CANCELLED_REASON = "run cancelled"


class StageDispatcher(Protocol):
    """Performs the work behind each stage capability."""

    async def run_stage(self, run: Run, context: StageContext) -> StageOutcome:
        """Run one attempt of ``context.stage`` for *run*."""
        ...

    def blocked_reason(self, run: Run, stage: StageDefinition) -> str | None:
        """Reason *stage* must be skipped although its dependencies succeeded."""
        ...


class RunRecorder(Protocol):
    """Persists run transitions."""

    async def record(self, run: Run, event: str, stage_id: str | None = None) -> None: ...


class StageScheduler:
    """Dependency-driven executor for pipeline runs.

    Parameters
    ----------
    dispatcher : StageDispatcher
        Runs stages and answers gate-blocking questions.
    recorder : RunRecorder
        Receives every run and stage transition (append-only history).
    observer_manager : ObserverManager
        Receives run and stage events.
    max_concurrent_stages : int
        Global cap on stages executing at once, across all runs.
    max_concurrent_stages_per_run : int
        Cap on stages executing at once within one run.
    default_stage_timeout : float | None
        Deadline for stages that do not declare ``timeoutSeconds``.
    """

    def __init__(
        self,
        dispatcher: StageDispatcher,
        recorder: RunRecorder,
        observer_manager: ObserverManager,
        *,
        max_concurrent_stages: int = DEFAULT_MAX_CONCURRENT_STAGES,
        max_concurrent_stages_per_run: int = DEFAULT_MAX_CONCURRENT_STAGES_PER_RUN,
        default_stage_timeout: float | None = None,
    ) -> None:
        if max_concurrent_stages < 1 or max_concurrent_stages_per_run < 1:
            raise ValueError("Concurrency limits must be at least 1")
        self._dispatcher = dispatcher
        self._recorder = recorder
        self._observers = observer_manager
        self._global_semaphore = asyncio.Semaphore(max_concurrent_stages)
        self._per_run_limit = max_concurrent_stages_per_run
        self._tokens: dict[str, CancellationToken] = {}
        self._executor = StageExecutor(
            observer_manager,
            record=self._record_stage,
            default_timeout=default_stage_timeout,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_active(self, run_id: str) -> bool:
        return run_id in self._tokens

    def cancel(self, run_id: str, reason: str | None = None) -> bool:
        """Request cooperative cancellation of an executing run.

        Returns
        -------
        bool
            False when the run is not executing in this scheduler.
        """
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason or CANCELLED_REASON)
        return True

    async def execute(
        self, pipeline: PipelineDefinition, run: Run, *, resumed: bool = False
    ) -> Run:
        """Drive *run* to a terminal status and return it.

        Parameters
        ----------
        pipeline : PipelineDefinition
            The immutable definition the run executes.
        run : Run
            A run in ``running`` state. On resume, stages already
            ``succeeded`` are kept and the rest restart from ``pending``.
        resumed : bool
            Whether the run is being resumed after a restart.
        """
        token = self._tokens.setdefault(run.run_id, CancellationToken())
        cid = set_correlation_id(run.run_id)
        run_semaphore = asyncio.Semaphore(self._per_run_limit)
        timer = Timer()
        order = {stage_id: i for i, stage_id in enumerate(_topological_order(pipeline))}
        outcomes: dict[str, StageOutcome] = {}
        in_flight: dict[asyncio.Task[StageOutcome | None], str] = {}

        try:
            if resumed:
                self._reset_interrupted(run, outcomes)
            run.status = RunStatus.RUNNING
            run.started_at = run.started_at or utcnow()
            await self._recorder.record(run, "run_resumed" if resumed else "run_started")
            await self._notify(
                RunStarted(
                    run_id=run.run_id,
                    pipeline_name=pipeline.name,
                    total_stages=len(pipeline.stages),
                    resumed=resumed,
                )
            )

            while True:
                if token.cancelled:
                    await self._skip_pending(run, token.reason or CANCELLED_REASON)
                else:
                    for stage_id in self._ready_set(pipeline, run, set(in_flight.values()), order):
                        stage = pipeline.stage(stage_id)
                        if reason := self._dispatcher.blocked_reason(run, stage):
                            await self._skip_with_dependents(run, pipeline, stage_id, reason)
                            continue
                        task = asyncio.create_task(
                            self._run_stage(
                                run, pipeline, stage, token, run_semaphore, outcomes
                            ),
                            name=f"{run.run_id}:{stage_id}",
                        )
                        in_flight[task] = stage_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    stage_id = in_flight.pop(task)
                    try:
                        outcome = task.result()
                    except StageError as error:
                        logger.warning(
                            "Stage '{stage}' failed: {error}", stage=stage_id, error=error
                        )
                        await self._skip_with_dependents(
                            run,
                            pipeline,
                            stage_id,
                            f"dependency '{stage_id}' failed",
                            include_self=False,
                        )
                        continue
                    if outcome is not None:
                        outcomes[stage_id] = outcome

            # Anything still pending is unreachable; keep the history honest.
            await self._skip_pending(run, "unreachable after upstream outcome")
            await self._finalize(pipeline, run, token, timer)
            return run
        finally:
            for task in in_flight:
                task.cancel()
            self._tokens.pop(run.run_id, None)
            reset_correlation_id(cid)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @staticmethod
    def _ready_set(
        pipeline: PipelineDefinition,
        run: Run,
        in_flight: set[str],
        order: dict[str, int],
    ) -> list[str]:
        """Pending, undispatched stages whose dependencies all succeeded."""
        ready = [
            stage.id
            for stage in pipeline.stages
            if run.result(stage.id).status == StageStatus.PENDING
            and stage.id not in in_flight
            and all(
                run.result(dep).status == StageStatus.SUCCEEDED for dep in stage.depends_on
            )
        ]
        return sorted(ready, key=order.__getitem__)

    async def _run_stage(
        self,
        run: Run,
        pipeline: PipelineDefinition,
        stage: StageDefinition,
        token: CancellationToken,
        run_semaphore: asyncio.Semaphore,
        outcomes: dict[str, StageOutcome],
    ) -> StageOutcome | None:
        async with run_semaphore, self._global_semaphore:
            if token.cancelled:
                await self._skip(run, stage.id, token.reason or CANCELLED_REASON)
                return None
            upstream = {
                dep: outcomes[dep] for dep in pipeline.upstream(stage.id) if dep in outcomes
            }

            async def handler(context: StageContext) -> StageOutcome:
                return await self._dispatcher.run_stage(run, context)

            return await self._executor.execute(
                run,
                stage,
                handler,
                cancel=token,
                upstream=upstream,
                interruptible=stage.capability != StageCapability.DEPLOY,
            )

    # ------------------------------------------------------------------
    # Skipping
    # ------------------------------------------------------------------

    async def _skip(self, run: Run, stage_id: str, reason: str) -> None:
        result = run.result(stage_id)
        if result.status.terminal:
            return
        result.status = StageStatus.SKIPPED
        result.skip_reason = reason
        result.ended_at = utcnow()
        await self._recorder.record(run, "stage_skipped", stage_id)
        await self._notify(StageSkipped(run_id=run.run_id, stage_id=stage_id, reason=reason))

    async def _skip_with_dependents(
        self,
        run: Run,
        pipeline: PipelineDefinition,
        stage_id: str,
        reason: str,
        *,
        include_self: bool = True,
    ) -> None:
        if include_self:
            await self._skip(run, stage_id, reason)
        dependents = pipeline.dependents(stage_id)
        order = {sid: i for i, sid in enumerate(pipeline.stage_ids)}
        for dependent in sorted(dependents, key=order.__getitem__):
            if run.result(dependent).status == StageStatus.PENDING:
                await self._skip(run, dependent, reason)

    async def _skip_pending(self, run: Run, reason: str) -> None:
        for stage_id in run.stage_ids_with(StageStatus.PENDING):
            await self._skip(run, stage_id, reason)

    # ------------------------------------------------------------------
    # Resume & completion
    # ------------------------------------------------------------------

    @staticmethod
    def _reset_interrupted(run: Run, outcomes: dict[str, StageOutcome]) -> None:
        for result in run.stages.values():
            if result.status == StageStatus.SUCCEEDED:
                outcomes[result.stage_id] = StageOutcome(success=True, output_ref=result.output_ref)
            elif result.status in (StageStatus.RUNNING, StageStatus.RETRYING):
                result.status = StageStatus.PENDING
                result.started_at = None
                result.error = None
                result.error_type = None

    async def _finalize(
        self,
        pipeline: PipelineDefinition,
        run: Run,
        token: CancellationToken,
        timer: Timer,
    ) -> None:
        if token.cancelled:
            run.status = RunStatus.CANCELLED
            run.error = token.reason
            await self._notify(RunCancelled(run_id=run.run_id, reason=token.reason))
        elif all(
            run.result(stage.id).status == StageStatus.SUCCEEDED
            for stage in pipeline.stages
            if stage.mandatory
        ):
            run.status = RunStatus.SUCCEEDED
        else:
            run.status = RunStatus.FAILED
            failed = run.stage_ids_with(StageStatus.FAILED)
            if failed:
                run.error = run.result(failed[0]).error
            else:
                skipped = next(
                    (r for r in run.stages.values() if r.status == StageStatus.SKIPPED), None
                )
                run.error = skipped.skip_reason if skipped else "mandatory stage did not succeed"
        run.completed_at = utcnow()
        await self._recorder.record(run, "run_completed")
        await self._notify(
            RunCompleted(
                run_id=run.run_id,
                status=str(run.status),
                duration_ms=timer.duration_ms,
                exit_code=int(run.exit_code()),
            )
        )

    async def _record_stage(self, run: Run, stage_id: str, event: str) -> None:
        await self._recorder.record(run, event, stage_id)

    async def _notify(self, event: Event) -> None:
        logger.info(event.log_message())
        await self._observers.notify(event)


def _topological_order(pipeline: PipelineDefinition) -> list[str]:
    return [stage_id for wave in pipeline.waves() for stage_id in wave]
