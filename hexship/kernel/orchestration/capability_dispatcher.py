"""Capability dispatcher - what each stage capability does around its adapter.

+-------------+---------------------------------------------------------------+
| Capability  | Work                                                          |
+=============+===============================================================+
| ``build``   | run the stage adapter                                         |
| ``custom``  | run the stage adapter                                         |
| ``analyze`` | run the adapter, then evaluate the gate on its metrics        |
| ``gate``    | fail with ``QualityGateFailure`` unless the gate allows it    |
| ``package`` | run the adapter, then register the produced artifact          |
| ``deploy``  | canary rollout of the run's artifact, then promote it         |
+-------------+---------------------------------------------------------------+

When a pipeline has several analyze stages the gate is evaluated once all of
them have succeeded, on their merged metrics. A stage needing a verdict
before that point evaluates on the metrics collected so far.
"""

from __future__ import annotations

from contextlib import suppress
from typing import TYPE_CHECKING

from hexship.kernel.domain.artifact import ArtifactState
from hexship.kernel.domain.pipeline import StageCapability
from hexship.kernel.domain.run import StageStatus
from hexship.kernel.exceptions import (
    InvalidTransitionError,
    PromotionBlockedError,
    QualityGateFailure,
    ResourceNotFoundError,
    RolloutInProgressError,
    StageExecutionError,
)
from hexship.kernel.logging import get_logger
from hexship.kernel.ports.stage_adapter import StageOutcome

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from hexship.kernel.domain.gate import GateDecision
    from hexship.kernel.domain.pipeline import PipelineDefinition, StageDefinition
    from hexship.kernel.domain.run import Run
    from hexship.kernel.ports.stage_adapter import StageAdapter, StageContext
    from hexship.stdlib.lib.artifact_manager import ArtifactManager
    from hexship.stdlib.lib.gate_evaluator import GateEvaluator
    from hexship.stdlib.lib.rollout_controller import RolloutController

logger = get_logger(__name__)

GATE_BLOCKED_REASON = "quality gate failed"


class CapabilityDispatcher:
    """Implements :class:`~hexship.kernel.orchestration.scheduler.StageDispatcher`.

    Parameters
    ----------
    pipelines : Mapping[str, PipelineDefinition]
        Registered pipelines by name (looked up per run).
    adapter_for : Callable[[PipelineDefinition, StageDefinition], StageAdapter]
        Returns the adapter that performs a stage's work.
    gate : GateEvaluator
    artifacts : ArtifactManager
    rollouts : RolloutController
    """

    def __init__(
        self,
        pipelines: Mapping[str, PipelineDefinition],
        adapter_for: Callable[[PipelineDefinition, StageDefinition], StageAdapter],
        gate: GateEvaluator,
        artifacts: ArtifactManager,
        rollouts: RolloutController,
    ) -> None:
        self._pipelines = pipelines
        self._adapter_for = adapter_for
        self._gate = gate
        self._artifacts = artifacts
        self._rollouts = rollouts
        self._metrics: dict[str, dict[str, float]] = {}

    # ------------------------------------------------------------------
    # StageDispatcher protocol
    # ------------------------------------------------------------------

    def blocked_reason(self, run: Run, stage: StageDefinition) -> str | None:
        if stage.gated and self._gate.blocks(run.run_id):
            return GATE_BLOCKED_REASON
        return None

    async def run_stage(self, run: Run, context: StageContext) -> StageOutcome:
        pipeline = self._pipelines[run.pipeline_name]
        stage = context.stage

        if stage.capability == StageCapability.GATE:
            return await self._run_gate(run, pipeline, stage)
        if stage.capability == StageCapability.DEPLOY:
            return await self._run_deploy(run, pipeline, context)

        if stage.gated:
            decision = await self._ensure_decision(run, pipeline)
            if not decision.allows_promotion:
                raise QualityGateFailure(stage.id, decision.failed_conditions)

        outcome = await self._adapter_for(pipeline, stage).arun(context)
        if not outcome.success:
            return outcome

        if stage.capability == StageCapability.ANALYZE:
            await self._collect_metrics(run, pipeline, stage, outcome)
        elif stage.capability == StageCapability.PACKAGE:
            await self._register_artifact(run, stage, outcome)
        return outcome

    def forget(self, run_id: str) -> None:
        """Drop per-run state once the run is terminal."""
        self._metrics.pop(run_id, None)
        self._gate.forget(run_id)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    async def _collect_metrics(
        self,
        run: Run,
        pipeline: PipelineDefinition,
        stage: StageDefinition,
        outcome: StageOutcome,
    ) -> None:
        self._metrics.setdefault(run.run_id, {}).update(outcome.metrics)
        analyzers = pipeline.stages_with(StageCapability.ANALYZE)
        pending = [
            s.id
            for s in analyzers
            if s.id != stage.id and run.result(s.id).status != StageStatus.SUCCEEDED
        ]
        if pending:
            logger.debug(
                "Gate waits for analyze stage(s) {pending}", pending=", ".join(pending)
            )
            return
        await self._ensure_decision(run, pipeline)

    async def _ensure_decision(self, run: Run, pipeline: PipelineDefinition) -> GateDecision:
        decision = self._gate.decision_for(run.run_id)
        if decision is None:
            decision = await self._gate.aevaluate(
                run.run_id, pipeline.gates, self._metrics.get(run.run_id, {})
            )
        run.gate_verdict = str(decision.verdict)
        return decision

    async def _run_gate(
        self, run: Run, pipeline: PipelineDefinition, stage: StageDefinition
    ) -> StageOutcome:
        decision = await self._ensure_decision(run, pipeline)
        if not decision.allows_promotion:
            raise QualityGateFailure(stage.id, decision.failed_conditions)
        note = " (overridden)" if decision.overridden else ""
        return StageOutcome(
            success=True,
            output_ref=f"gate://{run.run_id}",
            message=f"verdict {decision.verdict}{note}",
        )

    # ------------------------------------------------------------------
    # Artifacts & deployment
    # ------------------------------------------------------------------

    async def _register_artifact(
        self, run: Run, stage: StageDefinition, outcome: StageOutcome
    ) -> None:
        if outcome.artifact is None:
            raise StageExecutionError(
                stage.id, "package adapter reported success without an artifact", retryable=False
            )
        artifact = await self._artifacts.aregister(
            outcome.artifact.version, outcome.artifact.content_ref, run.run_id
        )
        run.artifact_version = artifact.version

    async def _run_deploy(
        self, run: Run, pipeline: PipelineDefinition, context: StageContext
    ) -> StageOutcome:
        stage = context.stage
        version = run.artifact_version
        if version is None:
            raise StageExecutionError(
                stage.id, "no artifact was packaged by this run", retryable=False
            )
        decision = await self._ensure_decision(run, pipeline)
        if not decision.allows_promotion:
            raise QualityGateFailure(stage.id, decision.failed_conditions)
        await self._require_deployable(stage, version)
        environment = stage.environment or ""

        try:
            deployment = await self._rollouts.arollout(
                environment,
                version,
                run_id=run.run_id,
                stage_id=stage.id,
                policy=pipeline.canary,
                cancel=context.cancel,
            )
        except RolloutInProgressError:
            raise
        except BaseException:
            # Any other failure reverted the environment, timeouts included
            run.result(stage.id).rolled_back = True
            await self._mark_rolled_back(version)
            raise

        try:
            await self._artifacts.apromote(version, gate=decision, rollout_state=deployment.state)
        except PromotionBlockedError as e:
            raise StageExecutionError(stage.id, e, retryable=False) from e
        return StageOutcome(success=True, output_ref=f"deploy://{environment}/{version}")

    async def _require_deployable(self, stage: StageDefinition, version: str) -> None:
        """Refuse versions that can never be promoted before any traffic moves.

        ``rolled_back`` and ``deprecated`` are terminal artifact states. A
        released version may be deployed again; promoting it is a no-op.
        """
        artifact = await self._artifacts.aget(version)
        if artifact.state in (ArtifactState.ROLLED_BACK, ArtifactState.DEPRECATED):
            blocked = PromotionBlockedError(version, f"artifact is {artifact.state}")
            raise StageExecutionError(stage.id, blocked, retryable=False)

    async def _mark_rolled_back(self, version: str) -> None:
        with suppress(ResourceNotFoundError, InvalidTransitionError):
            await self._artifacts.amark_rolled_back(version)
