"""Tests for the hexship CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import Result
from loguru import logger
from typer.testing import CliRunner

from hexship.cli.main import app

PIPELINE = """\
kind: Pipeline
metadata:
  name: service
spec:
  adapters:
    build: mock
    analyze:
      name: mock
      params: {metrics: {bugs: BUGS}}
    package: mock
  stages:
    - id: build
      capability: build
      params: BUILD_PARAMS
    - id: analyze
      capability: analyze
      dependsOn: [build]
    - id: gate
      capability: gate
      dependsOn: [analyze]
    - id: package
      capability: package
      dependsOn: [gate]
    - id: deploy
      capability: deploy
      environment: prod
      dependsOn: [package]
  gates:
    - {metric: bugs, comparator: "<=", threshold: 0}
  canary:
    observationWindowSeconds: 0.01
    pollIntervalSeconds: 0.005
"""

CONFIG = """\
kind: Config
spec:
  storage:
    backend: sqlite
    path: {db}
  deployment_target:
    name: mock_target
    params:
      error_rates: {{v2: 0.5}}
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "hexship.yaml"
    path.write_text(CONFIG.format(db=tmp_path / "state.db"))
    return path


def _pipeline_file(tmp_path: Path, *, bugs: int = 0, build_params: str = "{}") -> Path:
    path = tmp_path / "pipeline.yaml"
    path.write_text(PIPELINE.replace("BUGS", str(bugs)).replace("BUILD_PARAMS", build_params))
    return path


def _json(result: Result) -> Any:
    # Log records may share the captured stream with the document
    lines = result.stdout.splitlines()
    start = next(i for i, line in enumerate(lines) if line in ("{", "[", "[]"))
    return json.loads("\n".join(lines[start:]))


def _invoke(runner: CliRunner, config_file: Path, *args: str) -> Result:
    return runner.invoke(app, ["-q", "--json", "-c", str(config_file), *args])


class TestValidate:
    def test_valid_pipeline(self, runner: CliRunner, tmp_path: Path) -> None:
        path = _pipeline_file(tmp_path)

        result = runner.invoke(app, ["-q", "--json", "validate", str(path)])

        assert result.exit_code == 0
        report = _json(result)
        assert report["valid"] is True
        assert report["pipelines"] == ["service"]
        assert report["errors"] == []

    def test_invalid_pipeline(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text(
            "kind: Pipeline\nmetadata: {name: loop}\nspec:\n  stages:\n"
            "    - {id: a, dependsOn: [b]}\n    - {id: b, dependsOn: [a]}\n"
        )

        result = runner.invoke(app, ["-q", "--json", "validate", str(path)])

        assert result.exit_code == 1
        report = _json(result)
        assert report["valid"] is False
        assert report["errors"]

    def test_pretty_output(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(app, ["-q", "validate", "--explain", str(_pipeline_file(tmp_path))])

        assert result.exit_code == 0
        assert "Validation successful" in result.stdout


class TestRun:
    """``hexship run`` exit codes."""

    def test_success(self, runner: CliRunner, tmp_path: Path, config_file: Path) -> None:
        path = _pipeline_file(tmp_path)

        result = _invoke(runner, config_file, "run", str(path), "--change-ref", "v1")

        assert result.exit_code == 0
        run = _json(result)
        assert run["status"] == "succeeded"
        assert run["artifact_version"] == "v1"
        assert run["exit_code"] == 0

    def test_stage_failure(self, runner: CliRunner, tmp_path: Path, config_file: Path) -> None:
        path = _pipeline_file(tmp_path, build_params="{success: false}")

        result = _invoke(runner, config_file, "run", str(path))

        assert result.exit_code == 1
        run = _json(result)
        assert run["stages"]["build"]["status"] == "failed"
        assert run["stages"]["deploy"]["status"] == "skipped"

    def test_gate_failure(self, runner: CliRunner, tmp_path: Path, config_file: Path) -> None:
        path = _pipeline_file(tmp_path, bugs=3)

        result = _invoke(runner, config_file, "run", str(path))

        assert result.exit_code == 2
        assert _json(result)["gate_verdict"] == "fail"

    def test_timeout(self, runner: CliRunner, tmp_path: Path, config_file: Path) -> None:
        path = _pipeline_file(tmp_path, build_params="{delay: 5}")
        path.write_text(
            path.read_text().replace(
                "      capability: build\n", "      capability: build\n      timeoutSeconds: 0.05\n"
            )
        )

        result = _invoke(runner, config_file, "run", str(path))

        assert result.exit_code == 3

    def test_rollback(self, runner: CliRunner, tmp_path: Path, config_file: Path) -> None:
        path = _pipeline_file(tmp_path)
        assert _invoke(runner, config_file, "run", str(path), "--change-ref", "v1").exit_code == 0

        result = _invoke(runner, config_file, "run", str(path), "--change-ref", "v2")

        assert result.exit_code == 4
        assert _json(result)["stages"]["deploy"]["status"] == "failed"

    def test_invalid_pipeline_exits_1(
        self, runner: CliRunner, tmp_path: Path, config_file: Path
    ) -> None:
        path = tmp_path / "bad-pipeline.yaml"
        path.write_text("kind: Pipeline\nspec: 3\n")

        result = _invoke(runner, config_file, "run", str(path))

        assert result.exit_code == 1

    def test_invalid_config_exits_1(self, runner: CliRunner, tmp_path: Path) -> None:
        config = tmp_path / "bad.yaml"
        config.write_text("kind: Config\nspec:\n  scheduler: {workers: 0}\n")

        result = _invoke(runner, config, "run", str(_pipeline_file(tmp_path)))

        assert result.exit_code == 1


class TestRuns:
    """``hexship runs`` reads the persisted state of earlier runs."""

    @pytest.fixture
    def run_id(self, runner: CliRunner, tmp_path: Path, config_file: Path) -> str:
        path = _pipeline_file(tmp_path)
        result = _invoke(runner, config_file, "run", str(path), "--change-ref", "v1")
        assert result.exit_code == 0
        return _json(result)["run_id"]

    def test_list(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        result = _invoke(runner, config_file, "runs", "list")

        assert result.exit_code == 0
        runs = _json(result)
        assert [r["run_id"] for r in runs] == [run_id]
        assert runs[0]["exit_code"] == 0

    def test_list_filtered(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        result = _invoke(runner, config_file, "runs", "list", "--status", "failed")
        assert _json(result) == []

    def test_show(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        result = _invoke(runner, config_file, "runs", "show", run_id)

        assert result.exit_code == 0
        run = _json(result)
        assert run["status"] == "succeeded"
        assert run["gate"]["verdict"] == "pass"

    def test_show_unknown(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        assert _invoke(runner, config_file, "runs", "show", "nope").exit_code == 1

    def test_history(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        result = _invoke(runner, config_file, "runs", "history", run_id)

        assert result.exit_code == 0
        events = [entry["event"] for entry in _json(result)]
        assert events[0] == "run_created"
        assert events[-1] == "run_completed"

    def test_history_unknown(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        assert _invoke(runner, config_file, "runs", "history", "nope").exit_code == 1

    def test_environments(self, runner: CliRunner, config_file: Path, run_id: str) -> None:
        result = _invoke(runner, config_file, "runs", "environments")

        assert result.exit_code == 0
        (prod,) = _json(result)
        assert prod["environment"] == "prod"
        assert prod["current_version"] == "v1"
        assert prod["state"] == "Healthy"


class TestServe:
    def test_requires_pipelines(self, runner: CliRunner, config_file: Path) -> None:
        assert _invoke(runner, config_file, "serve").exit_code == 1

    def test_invalid_pipeline_file(
        self, runner: CliRunner, tmp_path: Path, config_file: Path
    ) -> None:
        path = tmp_path / "bad-pipeline.yaml"
        path.write_text("kind: Pipeline\nspec: 3\n")

        assert _invoke(runner, config_file, "serve", str(path)).exit_code == 1


class TestLoggingSetup:
    def test_default_loguru_sink_is_removed(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(app, ["-q", "validate", str(_pipeline_file(tmp_path))])

        assert result.exit_code == 0
        with pytest.raises(ValueError):
            logger.remove(0)
