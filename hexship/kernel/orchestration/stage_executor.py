"""Stage executor for individual stage execution.

This module provides the StageExecutor class that runs a single stage of a
run with full lifecycle management: dependency check, attempts with
timeout, retry with backoff, cooperative cancellation, result recording and
events.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from hexship.kernel.domain.run import StageStatus
from hexship.kernel.exceptions import (
    DependencyUnmetError,
    StageCancelledError,
    StageError,
    StageExecutionError,
    StageTimeoutError,
)
from hexship.kernel.logging import get_logger
from hexship.kernel.orchestration.events import (
    StageCompleted,
    StageFailed,
    StageRetrying,
    StageStarted,
)
from hexship.kernel.orchestration.retry import RetryConfig, execute_with_retry
from hexship.kernel.ports.stage_adapter import StageContext, StageOutcome
from hexship.kernel.utils.timer import Timer, utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from hexship.kernel.domain.pipeline import StageDefinition
    from hexship.kernel.domain.run import Run
    from hexship.kernel.orchestration.cancellation import CancellationToken
    from hexship.kernel.orchestration.events import Event
    from hexship.kernel.ports.observer_manager import ObserverManager

    StageHandler = Callable[[StageContext], Awaitable[StageOutcome]]
    RecordFn = Callable[["Run", str, str], Awaitable[None]]

logger = get_logger(__name__)


class StageExecutor:
    """Handles individual stage execution with timeout and retry logic.

    Responsibilities:

    - **Readiness check**: refuses to start a stage whose dependencies have
      not all succeeded (:class:`DependencyUnmetError`)
    - **Timeout handling**: per-attempt deadline via ``asyncio.timeout``
    - **Retry logic**: exponential backoff with jitter, honouring the
      ``retryable`` flag of stage errors
    - **Cancellation**: interruptible stages race the run's cancellation token
    - **Recording**: every status change goes through the ``record`` callback
    - **Error handling**: converts adapter exceptions to StageExecutionError

    Examples
    --------
    Example usage::

        executor = StageExecutor(observer_manager, record=registry.record_stage)
        outcome = await executor.execute(run, stage, handler, cancel=token)
    """

    def __init__(
        self,
        observer_manager: ObserverManager,
        *,
        record: RecordFn,
        default_timeout: float | None = None,
    ) -> None:
        """Initialize stage executor.

        Parameters
        ----------
        observer_manager : ObserverManager
            Receives stage lifecycle events.
        record : callable
            ``record(run, stage_id, event)`` persists a stage transition.
        default_timeout : float | None, default=None
            Deadline in seconds for stages that do not declare one.
        """
        self._observers = observer_manager
        self._record = record
        self.default_timeout = default_timeout

    async def execute(
        self,
        run: Run,
        stage: StageDefinition,
        handler: StageHandler,
        *,
        cancel: CancellationToken,
        upstream: dict[str, StageOutcome] | None = None,
        interruptible: bool = True,
    ) -> StageOutcome:
        """Execute one stage to a terminal result.

        Parameters
        ----------
        run : Run
            The run owning the stage result.
        stage : StageDefinition
            The stage to execute.
        handler : callable
            Performs one attempt and returns its outcome.
        cancel : CancellationToken
            The run's cancellation token.
        upstream : dict[str, StageOutcome] | None
            Outcomes of the stage's transitive dependencies.
        interruptible : bool, default=True
            Whether cancellation interrupts an attempt in flight. Stages that
            must clean up themselves (deploy) observe the token instead.

        Returns
        -------
        StageOutcome
            The successful outcome.

        Raises
        ------
        StageError
            The terminal failure, after the result has been recorded.
        """
        result = run.result(stage.id)
        unmet = sorted(
            dep for dep in stage.depends_on if run.result(dep).status != StageStatus.SUCCEEDED
        )
        if unmet:
            error = DependencyUnmetError(stage.id, unmet)
            logger.error("Dispatch invariant violated: {error}", error=error)
            await self._fail(run, stage.id, error)
            raise error

        stage_timer = Timer()
        timeout = stage.timeout_seconds or self.default_timeout
        retry_config = RetryConfig.from_policy(stage.retry)
        result.started_at = utcnow()

        async def _attempt(attempt: int) -> StageOutcome:
            result.status = StageStatus.RUNNING
            result.attempts = attempt
            await self._record(run, stage.id, "stage_running")
            await self._notify(
                StageStarted(
                    run_id=run.run_id,
                    stage_id=stage.id,
                    attempt=attempt,
                    dependencies=stage.depends_on,
                )
            )
            context = StageContext(
                run_id=run.run_id,
                stage=stage,
                trigger=run.trigger,
                attempt=attempt,
                cancel=cancel,
                upstream=dict(upstream or {}),
            )
            try:
                async with asyncio.timeout(timeout) as deadline:
                    if interruptible:
                        outcome = await self._interruptible(handler(context), cancel, stage.id)
                    else:
                        outcome = await handler(context)
            except TimeoutError as e:
                if deadline.expired():
                    raise StageTimeoutError(stage.id, timeout or 0.0) from e
                raise StageExecutionError(stage.id, e) from e
            except StageError:
                raise
            except Exception as e:
                raise StageExecutionError(stage.id, e) from e

            if not outcome.success:
                raise StageExecutionError(stage.id, outcome.message or "adapter reported failure")
            return outcome

        async def _on_retry(
            attempt: int, max_attempts: int, error: Exception, delay: float
        ) -> None:
            logger.debug(
                "Stage '{stage}' error ({attempt}/{max_attempts}): {error}, "
                "retrying in {delay:.2f}s...",
                stage=stage.id,
                attempt=attempt,
                max_attempts=max_attempts,
                error=error,
                delay=delay,
            )
            result.status = StageStatus.RETRYING
            result.error = str(error)
            result.error_type = type(error).__name__
            await self._record(run, stage.id, "stage_retrying")
            await self._notify(
                StageRetrying(
                    run_id=run.run_id,
                    stage_id=stage.id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error=str(error),
                )
            )

        async def _backoff(delay: float) -> bool:
            if await cancel.sleep(delay):
                raise StageCancelledError(stage.id, cancel.reason)
            return False

        try:
            outcome: StageOutcome = await execute_with_retry(
                _attempt,
                retry_config,
                on_retry=_on_retry,
                should_stop=lambda: cancel.cancelled,
                sleep=_backoff,
            )
        except StageError as error:
            await self._fail(run, stage.id, error)
            raise

        result.status = StageStatus.SUCCEEDED
        result.output_ref = outcome.output_ref
        result.error = None
        result.error_type = None
        result.ended_at = utcnow()
        await self._record(run, stage.id, "stage_succeeded")
        await self._notify(
            StageCompleted(
                run_id=run.run_id,
                stage_id=stage.id,
                attempts=result.attempts,
                duration_ms=stage_timer.duration_ms,
                output_ref=outcome.output_ref,
            )
        )
        return outcome

    async def _interruptible(
        self,
        work: Awaitable[StageOutcome],
        cancel: CancellationToken,
        stage_id: str,
    ) -> StageOutcome:
        """Await *work* unless the run is cancelled first."""
        if cancel.cancelled:
            if asyncio.iscoroutine(work):
                work.close()
            raise StageCancelledError(stage_id, cancel.reason)

        work_task = asyncio.ensure_future(work)
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not work_task.done():
                work_task.cancel()

        if work_task.done() and not work_task.cancelled():
            return work_task.result()
        await asyncio.gather(work_task, return_exceptions=True)
        raise StageCancelledError(stage_id, cancel.reason)

    async def _fail(self, run: Run, stage_id: str, error: StageError) -> None:
        result = run.result(stage_id)
        result.status = StageStatus.FAILED
        result.error = str(error)
        result.error_type = type(error).__name__
        result.ended_at = utcnow()
        await self._record(run, stage_id, "stage_failed")
        await self._notify(
            StageFailed(
                run_id=run.run_id,
                stage_id=stage_id,
                attempts=result.attempts,
                error=error,
            )
        )

    async def _notify(self, event: Event) -> None:
        logger.debug(event.log_message())
        await self._observers.notify(event)
