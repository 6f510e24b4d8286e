"""Tests for the hexship HTTP API."""

from __future__ import annotations

import time
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from hexship.kernel.config.models import GateConfig, HexShipConfig, TriggerConfig
from hexship.kernel.domain.pipeline import PipelineDefinition
from hexship.kernel.domain.trigger import TriggerNotification
from hexship.kernel.engine import PipelineEngine
from hexship.kernel.exceptions import (
    GateOverrideError,
    InvalidTransitionError,
    ResourceNotFoundError,
    RollbackFailure,
    TriggerQueueFullError,
    TriggerValidationError,
)
from hexship.server.main import create_app, status_code_for
from hexship.stdlib.adapters.memory import InMemoryCollectionStorage
from hexship.stdlib.adapters.mock import MockDeploymentTarget, MockStageAdapter
from hexship.stdlib.lib.gate_evaluator import token_digest
from hexship.stdlib.lib.trigger_ingestion import sign_payload

SECRET = "hook-secret"
TOKEN = "release-captain"


def _pipeline(name: str, build_delay: float = 0.0) -> PipelineDefinition:
    return PipelineDefinition.model_validate({
        "name": name,
        "stages": [
            {"id": "build", "capability": "build", "params": {"delay": build_delay}},
            {"id": "analyze", "capability": "analyze", "dependsOn": ["build"]},
            {"id": "gate", "capability": "gate", "dependsOn": ["analyze"]},
            {"id": "package", "capability": "package", "dependsOn": ["gate"]},
            {
                "id": "deploy",
                "capability": "deploy",
                "environment": "prod",
                "dependsOn": ["package"],
            },
        ],
        "gates": [{"metric": "bugs", "comparator": "<=", "threshold": 0}],
        "canary": {"observationWindowSeconds": 0.01, "pollIntervalSeconds": 0.005},
    })


def _trigger(change_ref: str, pipeline: str | None = None, secret: str = SECRET) -> dict[str, Any]:
    notification = TriggerNotification(repository="api", branch="main", change_ref=change_ref)
    body: dict[str, Any] = {
        "repository": "api",
        "branch": "main",
        "changeRef": change_ref,
        "signature": sign_payload(secret, notification.canonical_payload()),
    }
    if pipeline is not None:
        body["pipeline"] = pipeline
    return body


def _wait_for_status(client: TestClient, run_id: str, *statuses: str) -> dict[str, Any]:
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        run = client.get(f"/api/runs/{run_id}").json()
        if run["status"] in statuses:
            return run
        time.sleep(0.01)
    raise AssertionError(f"run {run_id} never reached {statuses}")


def _wait_for_stage(client: TestClient, run_id: str, stage_id: str, status: str) -> None:
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        run = client.get(f"/api/runs/{run_id}").json()
        if run["stages"][stage_id]["status"] == status:
            return
        time.sleep(0.01)
    raise AssertionError(f"stage {stage_id} of run {run_id} never reached {status}")


@pytest.fixture
def client() -> Iterator[TestClient]:
    config = HexShipConfig(
        trigger=TriggerConfig(secret=SECRET, default_pipeline="svc"),
        gate=GateConfig(bypass_token_digests=(token_digest(TOKEN),)),
    )
    engine = PipelineEngine(
        config,
        pipelines=[_pipeline("svc"), _pipeline("slow", build_delay=5)],
        storage=InMemoryCollectionStorage(),
        deployment_target=MockDeploymentTarget(error_rates={"v2": 0.2}),
        stage_adapters={"default": MockStageAdapter(metrics={"bugs": 0})},
    )
    with TestClient(create_app(engine)) as client:
        yield client


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "queue_depth": 0, "pipelines": ["slow", "svc"]}


class TestTriggers:
    """POST /api/triggers."""

    def test_accepted_run_completes(self, client: TestClient) -> None:
        response = client.post("/api/triggers", json=_trigger("v1"))

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["duplicate"] is False
        run = _wait_for_status(client, body["run_id"], "succeeded")
        assert run["exit_code"] == 0
        assert run["artifact_version"] == "v1"
        assert run["gate"]["verdict"] == "pass"

    def test_duplicate_returns_409(self, client: TestClient) -> None:
        first = client.post("/api/triggers", json=_trigger("v1")).json()

        response = client.post("/api/triggers", json=_trigger("v1"))

        assert response.status_code == 409
        assert response.json() == {
            "run_id": first["run_id"],
            "duplicate": True,
            "status": "duplicate",
        }

    def test_signature_header_wins(self, client: TestClient) -> None:
        body = _trigger("v1")
        header = body.pop("signature")
        body["signature"] = "sha256=0000"

        response = client.post("/api/triggers", json=body, headers={"X-Hexship-Signature": header})

        assert response.status_code == 202

    def test_bad_signature_is_400(self, client: TestClient) -> None:
        response = client.post("/api/triggers", json=_trigger("v1", secret="wrong"))

        assert response.status_code == 400
        assert response.json()["error"] == "TriggerValidationError"
        assert client.get("/api/runs").json() == []

    def test_unknown_pipeline_is_400(self, client: TestClient) -> None:
        response = client.post("/api/triggers", json=_trigger("v1", pipeline="mobile"))
        assert response.status_code == 400

    def test_missing_field_is_422(self, client: TestClient) -> None:
        response = client.post("/api/triggers", json={"repository": "api", "branch": "main"})
        assert response.status_code == 422


class TestRuns:
    def test_list_and_history(self, client: TestClient) -> None:
        run_id = client.post("/api/triggers", json=_trigger("v1")).json()["run_id"]
        _wait_for_status(client, run_id, "succeeded")

        runs = client.get("/api/runs", params={"repository": "api"}).json()
        assert [r["run_id"] for r in runs] == [run_id]
        assert client.get("/api/runs", params={"status": "failed"}).json() == []

        history = client.get(f"/api/runs/{run_id}/history").json()
        assert history[0]["event"] == "run_created"
        assert history[-1]["run_status"] == "succeeded"

    def test_rollback_exit_code(self, client: TestClient) -> None:
        run_id = client.post("/api/triggers", json=_trigger("v2")).json()["run_id"]

        run = _wait_for_status(client, run_id, "failed")

        assert run["exit_code"] == 4
        assert run["stages"]["deploy"]["status"] == "failed"

    def test_unknown_run_is_404(self, client: TestClient) -> None:
        assert client.get("/api/runs/nope").status_code == 404
        assert client.get("/api/runs/nope/history").status_code == 404
        assert client.post("/api/runs/nope/cancel").status_code == 404

    def test_limit_is_bounded(self, client: TestClient) -> None:
        assert client.get("/api/runs", params={"limit": 0}).status_code == 422

    def test_cancel_executing_run(self, client: TestClient) -> None:
        run_id = client.post("/api/triggers", json=_trigger("v1", pipeline="slow")).json()["run_id"]
        _wait_for_stage(client, run_id, "build", "running")

        response = client.post(f"/api/runs/{run_id}/cancel", json={"reason": "stop the line"})

        assert response.status_code == 202
        assert response.json()["cancel_requested"] is True
        run = _wait_for_status(client, run_id, "cancelled")
        assert run["exit_code"] == 1

    def test_cancel_finished_run_is_409(self, client: TestClient) -> None:
        run_id = client.post("/api/triggers", json=_trigger("v1")).json()["run_id"]
        _wait_for_status(client, run_id, "succeeded")

        assert client.post(f"/api/runs/{run_id}/cancel").status_code == 409


class TestGateOverride:
    def test_bad_token_is_403(self, client: TestClient) -> None:
        run_id = client.post("/api/triggers", json=_trigger("v1", pipeline="slow")).json()["run_id"]

        response = client.post(
            f"/api/runs/{run_id}/gate-override",
            json={"token": "guess", "actor": "mallory", "reason": "ship it"},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "GateOverrideError"
        client.post(f"/api/runs/{run_id}/cancel")

    def test_override_before_evaluation_is_pending(self, client: TestClient) -> None:
        run_id = client.post("/api/triggers", json=_trigger("v1", pipeline="slow")).json()["run_id"]

        response = client.post(
            f"/api/runs/{run_id}/gate-override",
            json={"token": TOKEN, "actor": "alice", "reason": "hotfix"},
        )

        assert response.status_code == 200
        assert response.json() == {"run_id": run_id, "applied": False, "pending": True}
        audit = client.get(f"/api/runs/{run_id}/gate-audit").json()
        assert [entry["actor"] for entry in audit] == ["alice"]
        assert TOKEN not in str(audit)
        client.post(f"/api/runs/{run_id}/cancel")


class TestEnvironments:
    def test_environment_and_forced_rollback(self, client: TestClient) -> None:
        for change_ref in ("v1", "v3"):
            run_id = client.post("/api/triggers", json=_trigger(change_ref)).json()["run_id"]
            _wait_for_status(client, run_id, "succeeded")

        env = client.get("/api/environments/prod").json()
        assert env["current_version"] == "v3"
        assert env["previous_version"] == "v1"
        assert env["in_flight"] is False

        response = client.post("/api/environments/prod/rollback", json={"reason": "bad deploy"})

        assert response.status_code == 200
        assert response.json()["current_version"] == "v1"
        rolled_back = client.get("/api/artifacts", params={"state": "rolled_back"}).json()
        assert [a["version"] for a in rolled_back] == ["v3"]
        assert [e["environment"] for e in client.get("/api/environments").json()] == ["prod"]

    def test_unknown_environment_is_404(self, client: TestClient) -> None:
        assert client.get("/api/environments/staging").status_code == 404
        assert client.post("/api/environments/staging/rollback").status_code == 404


class TestStatusCodes:
    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (TriggerValidationError("bad"), 400),
            (GateOverrideError("no"), 403),
            (ResourceNotFoundError("run", "x"), 404),
            (InvalidTransitionError("late"), 409),
            (RollbackFailure("deploy", "prod", RuntimeError("boom")), 502),
            (TriggerQueueFullError(3), 503),
        ],
    )
    def test_mapping(self, error: Exception, status_code: int) -> None:
        assert status_code_for(error) == status_code
