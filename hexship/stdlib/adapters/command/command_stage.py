"""Command stage adapter - runs an external tool as a subprocess.

The command and its settings come from the adapter params, overridable per
stage through ``params``::

    stages:
      - id: build
        capability: build
        params:
          command: ["make", "build", "REF={change_ref}"]
      - id: analyze
        capability: analyze
        params:
          command: "./scripts/analyze.sh"
          metrics_file: reports/metrics.json
      - id: package
        capability: package
        params:
          command: ["docker", "build", "-t", "app:{change_ref}", "."]
          version: "{change_ref}"
          content_ref: "registry.local/app:{change_ref}"

Placeholders ``{run_id}``, ``{stage_id}``, ``{attempt}``, ``{repository}``,
``{branch}`` and ``{change_ref}`` are substituted in every argument. A zero
exit status is success; the combined stdout/stderr is written to
``log_dir`` and its path becomes the stage's output reference.
"""

from __future__ import annotations

import asyncio
import json
import os
import shlex
from pathlib import Path
from typing import Any

from hexship.kernel.domain.pipeline import StageCapability
from hexship.kernel.exceptions import ConfigurationError
from hexship.kernel.logging import get_logger
from hexship.kernel.ports.stage_adapter import ArtifactHandle, StageContext, StageOutcome

logger = get_logger(__name__)

_TAIL_CHARS = 500


class CommandStageAdapter:
    """StageAdapter backed by ``asyncio.create_subprocess_exec``.

    Parameters
    ----------
    command : str | list[str] | None
        Program and arguments; a string is split with :func:`shlex.split`.
    cwd : str | None
        Working directory for the process.
    env : dict[str, str] | None
        Extra environment variables, merged over the current environment.
    metrics_file : str | None
        JSON object of metrics read after a successful run (relative to ``cwd``).
    version : str
        Artifact version template for package stages.
    content_ref : str | None
        Artifact content reference template for package stages.
    log_dir : str | None
        Directory for per-attempt output logs. Without it output is only
        kept in the outcome message tail.
    """

    def __init__(
        self,
        command: str | list[str] | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        metrics_file: str | None = None,
        version: str = "{change_ref}",
        content_ref: str | None = None,
        log_dir: str | None = None,
        **kwargs: Any,
    ) -> None:
        self._defaults: dict[str, Any] = {
            "command": command,
            "cwd": cwd,
            "env": dict(env or {}),
            "metrics_file": metrics_file,
            "version": version,
            "content_ref": content_ref,
            "log_dir": log_dir,
            **kwargs,
        }

    async def arun(self, context: StageContext) -> StageOutcome:
        settings = {**self._defaults, **context.stage.params}
        values = {
            "run_id": context.run_id,
            "stage_id": context.stage.id,
            "attempt": context.attempt,
            "repository": context.trigger.repository,
            "branch": context.trigger.branch,
            "change_ref": context.trigger.change_ref,
        }
        argv = [arg.format(**values) for arg in self._argv(context.stage.id, settings["command"])]
        cwd = settings["cwd"]
        env = {**os.environ, **{k: str(v) for k, v in settings["env"].items()}}
        env.update({f"HEXSHIP_{key.upper()}": str(value) for key, value in values.items()})

        logger.debug("Running {argv} for stage '{stage}'", argv=argv, stage=context.stage.id)
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        output = stdout.decode(errors="replace")
        output_ref = self._write_log(settings["log_dir"], context, output)
        if process.returncode != 0:
            return StageOutcome(
                success=False,
                output_ref=output_ref,
                message=f"exit status {process.returncode}: {output[-_TAIL_CHARS:].strip()}",
            )

        metrics = self._read_metrics(settings["metrics_file"], cwd)
        artifact = None
        if context.stage.capability == StageCapability.PACKAGE:
            version = str(settings["version"]).format(**values)
            content_ref = (settings["content_ref"] or output_ref or version).format(
                **values, version=version
            )
            artifact = ArtifactHandle(version=version, content_ref=content_ref)
        return StageOutcome(
            success=True, output_ref=output_ref, metrics=metrics, artifact=artifact
        )

    @staticmethod
    def _argv(stage_id: str, command: str | list[str] | None) -> list[str]:
        if not command:
            raise ConfigurationError("command adapter", f"stage '{stage_id}' has no command")
        if isinstance(command, str):
            return shlex.split(command)
        return [str(arg) for arg in command]

    @staticmethod
    def _write_log(log_dir: str | None, context: StageContext, output: str) -> str | None:
        if not log_dir:
            return None
        path = Path(log_dir) / context.run_id / f"{context.stage.id}.{context.attempt}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output)
        return str(path)

    @staticmethod
    def _read_metrics(metrics_file: str | None, cwd: str | None) -> dict[str, float]:
        if not metrics_file:
            return {}
        path = Path(cwd or ".") / metrics_file
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            raise ValueError(f"metrics file {path} must hold a JSON object")
        return {str(key): float(value) for key, value in data.items()}
