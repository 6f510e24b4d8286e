"""End-to-end tests for the pipeline engine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio

from hexship.drivers.observer_manager.local import LocalObserverManager
from hexship.kernel.config.models import GateConfig, HexShipConfig, SchedulerConfig
from hexship.kernel.domain.artifact import ArtifactState
from hexship.kernel.domain.deployment import Deployment, RolloutState, deployment_to_storage
from hexship.kernel.domain.pipeline import PipelineDefinition
from hexship.kernel.domain.run import ExitCode, Run, RunStatus, StageStatus, TriggerContext
from hexship.kernel.domain.trigger import TriggerNotification
from hexship.kernel.engine import PipelineEngine
from hexship.kernel.exceptions import (
    ConfigurationError,
    GateOverrideError,
    InvalidTransitionError,
    ResourceNotFoundError,
)
from hexship.stdlib.adapters.memory import InMemoryCollectionStorage
from hexship.stdlib.adapters.mock import MockDeploymentTarget, MockStageAdapter
from hexship.stdlib.lib.artifact_manager import ArtifactManager
from hexship.stdlib.lib.gate_evaluator import token_digest
from hexship.stdlib.lib.rollout_controller import DEPLOYMENTS_COLLECTION
from hexship.stdlib.lib.run_registry import RunRegistry

TOKEN = "release-captain"
GOOD_METRICS = {"bugs": 0, "coverage": 85}
DOWNSTREAM = ["analyze", "gate", "package", "deploy"]


def _pipeline(
    *, timeouts: dict[str, float] | None = None, **stage_params: dict[str, Any]
) -> PipelineDefinition:
    stages: list[dict[str, Any]] = [
        {"id": "checkout"},
        {"id": "build", "capability": "build", "dependsOn": ["checkout"]},
        {"id": "analyze", "capability": "analyze", "dependsOn": ["build"]},
        {"id": "gate", "capability": "gate", "dependsOn": ["analyze"]},
        {"id": "package", "capability": "package", "dependsOn": ["gate"]},
        {"id": "deploy", "capability": "deploy", "environment": "prod", "dependsOn": ["package"]},
    ]
    for stage in stages:
        if stage["id"] in stage_params:
            stage["params"] = stage_params[stage["id"]]
        if timeouts and stage["id"] in timeouts:
            stage["timeoutSeconds"] = timeouts[stage["id"]]
    return PipelineDefinition.model_validate({
        "name": "svc",
        "stages": stages,
        "gates": [
            {"metric": "bugs", "comparator": "<=", "threshold": 0},
            {"metric": "coverage", "comparator": ">=", "threshold": 80},
        ],
        "canary": {"observationWindowSeconds": 0.01, "pollIntervalSeconds": 0.005},
    })


def _context(change_ref: str) -> TriggerContext:
    return TriggerContext(repository="api", branch="main", change_ref=change_ref)


def _notification(change_ref: str) -> TriggerNotification:
    return TriggerNotification(repository="api", branch="main", change_ref=change_ref)


def _engine(
    pipeline: PipelineDefinition | None = None,
    *,
    storage: InMemoryCollectionStorage | None = None,
    target: MockDeploymentTarget | None = None,
    workers: int = 2,
) -> PipelineEngine:
    config = HexShipConfig(
        scheduler=SchedulerConfig(workers=workers),
        gate=GateConfig(bypass_token_digests=(token_digest(TOKEN),)),
    )
    return PipelineEngine(
        config,
        pipelines=[pipeline or _pipeline()],
        storage=storage or InMemoryCollectionStorage(),
        deployment_target=target or MockDeploymentTarget(error_rates={"v2": 0.2}),
        stage_adapters={"default": MockStageAdapter(metrics=GOOD_METRICS)},
    )


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[PipelineEngine]:
    engine = _engine()
    yield engine
    await engine.stop()


async def _wait_until_running(engine: PipelineEngine, run_id: str, stage_id: str) -> None:
    async with asyncio.timeout(2):
        while (await engine.get_run(run_id)).result(stage_id).status != StageStatus.RUNNING:
            await asyncio.sleep(0.005)


class TestRunOnce:
    """Inline runs through every capability."""

    @pytest.mark.asyncio()
    async def test_successful_run_releases_artifact(self, engine: PipelineEngine) -> None:
        run = await engine.run_once(_pipeline(), _context("v1"))

        assert run.status == RunStatus.SUCCEEDED
        assert run.exit_code() == ExitCode.SUCCESS
        assert run.gate_verdict == "pass"
        assert run.artifact_version == "v1"
        assert (await engine.get_artifact("v1")).state == ArtifactState.RELEASED
        deployment = await engine.get_deployment("prod")
        assert deployment.state == RolloutState.HEALTHY
        assert deployment.current_version == "v1"

    @pytest.mark.asyncio()
    async def test_build_failure_skips_downstream(self, engine: PipelineEngine) -> None:
        pipeline = _pipeline(build={"success": False})

        run = await engine.run_once(pipeline, _context("v1"))

        assert run.status == RunStatus.FAILED
        assert run.result("build").status == StageStatus.FAILED
        for stage_id in DOWNSTREAM:
            assert run.result(stage_id).status == StageStatus.SKIPPED
            assert run.result(stage_id).skip_reason == "dependency 'build' failed"
        assert run.exit_code() == ExitCode.STAGE_FAILURE
        assert await engine.list_artifacts() == []

    @pytest.mark.asyncio()
    async def test_failed_gate_blocks_package(self, engine: PipelineEngine) -> None:
        pipeline = _pipeline(analyze={"metrics": {"bugs": 2, "coverage": 85}})

        run = await engine.run_once(pipeline, _context("v1"))

        assert run.status == RunStatus.FAILED
        assert run.gate_verdict == "fail"
        assert run.result("gate").error_type == "QualityGateFailure"
        assert run.result("package").status == StageStatus.SKIPPED
        assert run.exit_code() == ExitCode.GATE_FAILURE
        decision = await engine.gate_decision(run.run_id)
        assert decision is not None
        assert decision.failed_conditions == ["bugs <= 0"]

    @pytest.mark.asyncio()
    async def test_unhealthy_canary_rolls_back(self, engine: PipelineEngine) -> None:
        await engine.run_once(_pipeline(), _context("v1"))

        run = await engine.run_once(_pipeline(), _context("v2"))

        assert run.status == RunStatus.FAILED
        assert run.result("deploy").status == StageStatus.FAILED
        assert run.exit_code() == ExitCode.ROLLBACK
        assert (await engine.get_artifact("v2")).state == ArtifactState.ROLLED_BACK
        assert (await engine.get_artifact("v1")).state == ArtifactState.RELEASED
        deployment = await engine.get_deployment("prod")
        assert deployment.state == RolloutState.IDLE
        assert deployment.current_version == "v1"

    @pytest.mark.asyncio()
    async def test_history_is_recorded(self, engine: PipelineEngine) -> None:
        run = await engine.run_once(_pipeline(), _context("v1"))

        events = [entry["event"] for entry in await engine.run_history(run.run_id)]

        assert events[0] == "run_created"
        assert events[1] == "run_started"
        assert events[-1] == "run_completed"
        assert events.count("stage_succeeded") == 6

    @pytest.mark.asyncio()
    async def test_unknown_run(self, engine: PipelineEngine) -> None:
        with pytest.raises(ResourceNotFoundError):
            await engine.get_run("missing")
        with pytest.raises(ResourceNotFoundError):
            await engine.run_history("missing")


class TestDeployFailures:
    """Reverted rollouts and versions that may not be deployed again."""

    @pytest.fixture
    def target(self) -> MockDeploymentTarget:
        return MockDeploymentTarget()

    @pytest_asyncio.fixture
    async def released(self, target: MockDeploymentTarget) -> AsyncIterator[PipelineEngine]:
        engine = _engine(target=target)
        run = await engine.run_once(_pipeline(), _context("v1"))
        assert run.status == RunStatus.SUCCEEDED
        yield engine
        await engine.stop()

    async def _assert_reverted_to_v1(self, engine: PipelineEngine, version: str) -> None:
        assert (await engine.get_artifact(version)).state == ArtifactState.ROLLED_BACK
        assert (await engine.get_artifact("v1")).state == ArtifactState.RELEASED
        deployment = await engine.get_deployment("prod")
        assert deployment.state == RolloutState.IDLE
        assert deployment.current_version == "v1"

    @pytest.mark.asyncio()
    async def test_deploy_timeout_rolls_back(
        self, released: PipelineEngine, target: MockDeploymentTarget
    ) -> None:
        target.apply_delay = 0.2

        run = await released.run_once(_pipeline(timeouts={"deploy": 0.05}), _context("v2"))

        deploy = run.result("deploy")
        assert deploy.status == StageStatus.FAILED
        assert deploy.error_type == "StageTimeoutError"
        assert deploy.rolled_back is True
        assert run.exit_code() == ExitCode.ROLLBACK
        assert target.rollbacks == [("prod", "v1")]
        await self._assert_reverted_to_v1(released, "v2")
        stored = await released.get_run(run.run_id)
        assert stored.result("deploy").rolled_back is True

    @pytest.mark.asyncio()
    async def test_target_error_mid_rollout_rolls_back(
        self, released: PipelineEngine, target: MockDeploymentTarget
    ) -> None:
        target.fail_apply_at = 50

        run = await released.run_once(_pipeline(), _context("v2"))

        deploy = run.result("deploy")
        assert deploy.status == StageStatus.FAILED
        assert deploy.error_type == "RolloutAbortedError"
        assert deploy.attempts == 1
        assert run.exit_code() == ExitCode.ROLLBACK
        assert target.live == {"prod": "v1"}
        await self._assert_reverted_to_v1(released, "v2")

    @pytest.mark.asyncio()
    async def test_rolled_back_version_is_not_redeployed(
        self, released: PipelineEngine, target: MockDeploymentTarget
    ) -> None:
        target.error_rates["v2"] = 0.5
        first = await released.run_once(_pipeline(), _context("v2"))
        assert first.exit_code() == ExitCode.ROLLBACK
        target.error_rates.clear()
        applied = len(target.applied)

        run = await released.run_once(_pipeline(), _context("v2"))

        deploy = run.result("deploy")
        assert deploy.status == StageStatus.FAILED
        assert deploy.error_type == "StageExecutionError"
        assert "rolled_back" in (deploy.error or "")
        assert deploy.rolled_back is False
        assert run.exit_code() == ExitCode.STAGE_FAILURE
        assert len(target.applied) == applied
        assert target.live == {"prod": "v1"}
        await self._assert_reverted_to_v1(released, "v2")

    @pytest.mark.asyncio()
    async def test_deprecated_version_is_not_redeployed(
        self, released: PipelineEngine, target: MockDeploymentTarget
    ) -> None:
        await released.run_once(_pipeline(), _context("v3"))
        assert (await released.get_artifact("v1")).state == ArtifactState.DEPRECATED
        applied = len(target.applied)

        run = await released.run_once(_pipeline(), _context("v1"))

        assert run.result("deploy").error_type == "StageExecutionError"
        assert run.exit_code() == ExitCode.STAGE_FAILURE
        assert len(target.applied) == applied
        assert (await released.get_artifact("v1")).state == ArtifactState.DEPRECATED
        deployment = await released.get_deployment("prod")
        assert deployment.state == RolloutState.HEALTHY
        assert deployment.current_version == "v3"


class TestAdapterConfiguration:
    def test_missing_adapter_is_rejected_at_registration(self) -> None:
        with pytest.raises(ConfigurationError, match="no adapter configured"):
            PipelineEngine(HexShipConfig(), pipelines=[_pipeline()])

    def test_pipeline_adapter_reference(self) -> None:
        pipeline = PipelineDefinition.model_validate({
            "name": "svc",
            "stages": [{"id": "build", "capability": "build", "adapter": "mock"}],
        })
        engine = PipelineEngine(HexShipConfig(), pipelines=[pipeline])
        assert engine.pipelines["svc"] is pipeline

    def test_unresolvable_adapter(self) -> None:
        pipeline = PipelineDefinition.model_validate({
            "name": "svc",
            "stages": [{"id": "build", "adapter": "gradle"}],
        })
        with pytest.raises(ConfigurationError, match="gradle"):
            PipelineEngine(HexShipConfig(), pipelines=[pipeline])


class TestQueuedRuns:
    """Admission through the queue and the worker pool."""

    @pytest.mark.asyncio()
    async def test_submit_and_wait(self, engine: PipelineEngine) -> None:
        await engine.start()

        receipt = await engine.submit(_notification("v1"))
        run = await engine.wait_for(receipt.run_id, timeout=5)

        assert run.status == RunStatus.SUCCEEDED
        duplicate = await engine.submit(_notification("v1"))
        assert duplicate.duplicate
        assert duplicate.run_id == receipt.run_id

    @pytest.mark.asyncio()
    async def test_same_branch_runs_in_arrival_order(self, engine: PipelineEngine) -> None:
        await engine.start()

        first = await engine.submit(_notification("v1"))
        second = await engine.submit(_notification("v3"))
        runs = [await engine.wait_for(r.run_id, timeout=5) for r in (first, second)]

        assert [r.status for r in runs] == [RunStatus.SUCCEEDED] * 2
        assert runs[0].completed_at is not None and runs[1].started_at is not None
        assert runs[0].completed_at <= runs[1].started_at
        assert (await engine.get_deployment("prod")).current_version == "v3"

    @pytest.mark.asyncio()
    async def test_cancel_queued_run(self) -> None:
        engine = _engine()
        try:
            await engine.start(workers=0, recover=False)
            receipt = await engine.submit(_notification("v1"))

            await engine.cancel_run(receipt.run_id)

            run = await engine.wait_for(receipt.run_id, timeout=1)
            assert run.status == RunStatus.CANCELLED
            assert all(r.status == StageStatus.SKIPPED for r in run.stages.values())
            assert engine.queue_depth == 0
            with pytest.raises(InvalidTransitionError):
                await engine.cancel_run(receipt.run_id)
        finally:
            await engine.stop()

    @pytest.mark.asyncio()
    async def test_cancel_executing_run(self) -> None:
        engine = _engine(_pipeline(build={"delay": 5}))
        try:
            await engine.start()
            receipt = await engine.submit(_notification("v1"))
            await _wait_until_running(engine, receipt.run_id, "build")

            await engine.cancel_run(receipt.run_id, "stop the line")

            run = await engine.wait_for(receipt.run_id, timeout=2)
            assert run.status == RunStatus.CANCELLED
            assert run.error == "stop the line"
            assert run.result("package").status == StageStatus.SKIPPED
            assert run.exit_code() == ExitCode.STAGE_FAILURE
        finally:
            await engine.stop()

    @pytest.mark.asyncio()
    async def test_wait_for_timeout(self) -> None:
        engine = _engine()
        try:
            await engine.start(workers=0, recover=False)
            receipt = await engine.submit(_notification("v1"))
            with pytest.raises(TimeoutError):
                await engine.wait_for(receipt.run_id, timeout=0.01)
        finally:
            await engine.stop()


class TestOperatorActions:
    @pytest.mark.asyncio()
    async def test_override_held_until_evaluation(self) -> None:
        pipeline = _pipeline(
            checkout={"delay": 0.1}, analyze={"metrics": {"bugs": 3, "coverage": 50}}
        )
        engine = _engine(pipeline)
        try:
            await engine.start()
            receipt = await engine.submit(_notification("v1"))

            assert await engine.override_gate(receipt.run_id, TOKEN, "alice", "hotfix") is None

            run = await engine.wait_for(receipt.run_id, timeout=5)
            assert run.status == RunStatus.SUCCEEDED
            assert run.gate_verdict == "fail"
            entries = await engine.audit_log(receipt.run_id)
            assert [e.actor for e in entries] == ["alice"]
            assert entries[0].waived_conditions == ("bugs <= 0", "coverage >= 80")
        finally:
            await engine.stop()

    @pytest.mark.asyncio()
    async def test_override_rejected_for_bad_token(self) -> None:
        engine = _engine(_pipeline(checkout={"delay": 0.2}))
        try:
            await engine.start()
            receipt = await engine.submit(_notification("v1"))
            with pytest.raises(GateOverrideError):
                await engine.override_gate(receipt.run_id, "guess", "mallory")
        finally:
            await engine.stop()

    @pytest.mark.asyncio()
    async def test_override_rejected_for_finished_run(self, engine: PipelineEngine) -> None:
        run = await engine.run_once(_pipeline(), _context("v1"))
        with pytest.raises(InvalidTransitionError):
            await engine.override_gate(run.run_id, TOKEN, "alice")

    @pytest.mark.asyncio()
    async def test_force_rollback(self, engine: PipelineEngine) -> None:
        await engine.run_once(_pipeline(), _context("v1"))
        await engine.run_once(_pipeline(), _context("v3"))

        deployment = await engine.force_rollback("prod")

        assert deployment.state == RolloutState.IDLE
        assert deployment.current_version == "v1"
        assert (await engine.get_artifact("v3")).state == ArtifactState.ROLLED_BACK
        assert [d.environment for d in await engine.list_deployments()] == ["prod"]


class TestRecovery:
    """Restart after a crash with shared storage."""

    @pytest.mark.asyncio()
    async def test_queued_run_resumes_after_restart(self) -> None:
        storage = InMemoryCollectionStorage()
        first = _engine(storage=storage)
        await first.start(workers=0, recover=False)
        receipt = await first.submit(_notification("v1"))
        await first.stop()

        second = _engine(storage=storage)
        try:
            report = await second.start()
            run = await second.wait_for(receipt.run_id, timeout=5)
        finally:
            await second.stop()

        assert report.resumed_runs == [receipt.run_id]
        assert run.status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio()
    async def test_interrupted_rollout_is_reverted(self) -> None:
        storage = InMemoryCollectionStorage()
        pipeline = _pipeline()
        run = Run.for_stages("svc", _context("v9"), pipeline.stage_ids)
        for stage_id in pipeline.stage_ids[:-1]:
            run.result(stage_id).status = StageStatus.SUCCEEDED
        run.result("deploy").status = StageStatus.RUNNING
        run.artifact_version = "v9"
        await RunRegistry(storage).record(run, "stage_running", "deploy")
        artifacts = ArtifactManager(storage, LocalObserverManager())
        await artifacts.aregister("v9", "mock://v9", run.run_id)
        crashed = Deployment(
            environment="prod",
            state=RolloutState.ROLLOUT_IN_PROGRESS,
            current_version="v8",
            target_version="v9",
            run_id=run.run_id,
            step_index=0,
            traffic_percent=10,
        )
        await storage.asave(DEPLOYMENTS_COLLECTION, "prod", deployment_to_storage(crashed))

        target = MockDeploymentTarget()
        engine = _engine(storage=storage, target=target)
        try:
            report = await engine.start()
            finished = await engine.wait_for(run.run_id, timeout=5)
            deployment = await engine.get_deployment("prod")
            artifact = await engine.get_artifact("v9")
        finally:
            await engine.stop()

        assert report.reverted_environments == ["prod"]
        assert target.rollbacks == [("prod", "v8")]
        assert deployment.state == RolloutState.IDLE
        assert deployment.current_version == "v8"
        assert artifact.state == ArtifactState.ROLLED_BACK
        assert finished.status == RunStatus.FAILED
        assert finished.result("deploy").error_type == "RolloutInterrupted"
        assert finished.result("deploy").rolled_back is True
        assert finished.exit_code() == ExitCode.ROLLBACK
