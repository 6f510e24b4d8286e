"""Mock stage adapter for tests and local dry runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from hexship.kernel.domain.pipeline import StageCapability
from hexship.kernel.ports.stage_adapter import ArtifactHandle, StageContext, StageOutcome


@dataclass
class RecordedStageCall:
    """A recorded stage attempt for test assertions."""

    run_id: str
    stage_id: str
    attempt: int
    params: dict[str, Any]


class MockStageAdapter:
    """StageAdapter that succeeds, fails or stalls on demand.

    Every default can be overridden per stage through the stage's ``params``.

    Parameters
    ----------
    delay : float
        Seconds each attempt takes.
    fail_attempts : int
        Number of leading attempts that report failure (transient errors).
    success : bool
        Outcome once ``fail_attempts`` are exhausted.
    metrics : dict[str, float] | None
        Metrics payload reported by every attempt (used by analyze stages).
    version : str
        Artifact version template for package stages; ``{change_ref}``,
        ``{run_id}``, ``{branch}`` and ``{repository}`` are substituted.
    content_ref : str | None
        Artifact content reference template (default ``mock://<version>``).
    raise_error : bool
        Raise ``ConnectionError`` instead of returning a failed outcome.

    Examples
    --------
    Flaky build::

        adapter = MockStageAdapter(fail_attempts=2)
        # attempts 1 and 2 fail, attempt 3 succeeds
        assert [c.attempt for c in adapter.calls] == [1, 2, 3]
    """

    def __init__(
        self,
        delay: float = 0.0,
        fail_attempts: int = 0,
        success: bool = True,
        metrics: dict[str, float] | None = None,
        version: str = "{change_ref}",
        content_ref: str | None = None,
        raise_error: bool = False,
        **kwargs: Any,
    ) -> None:
        self._defaults: dict[str, Any] = {
            "delay": delay,
            "fail_attempts": fail_attempts,
            "success": success,
            "metrics": dict(metrics or {}),
            "version": version,
            "content_ref": content_ref,
            "raise_error": raise_error,
            **kwargs,
        }
        self.calls: list[RecordedStageCall] = []

    async def arun(self, context: StageContext) -> StageOutcome:
        settings = {**self._defaults, **context.stage.params}
        self.calls.append(
            RecordedStageCall(
                run_id=context.run_id,
                stage_id=context.stage.id,
                attempt=context.attempt,
                params=settings,
            )
        )

        if settings["delay"]:
            await asyncio.sleep(float(settings["delay"]))

        output_ref = f"mock://{context.run_id}/{context.stage.id}/{context.attempt}"
        if context.attempt <= int(settings["fail_attempts"]) or not settings["success"]:
            message = f"mock failure on attempt {context.attempt}"
            if settings["raise_error"]:
                raise ConnectionError(message)
            return StageOutcome(success=False, output_ref=output_ref, message=message)

        artifact = None
        if context.stage.capability == StageCapability.PACKAGE:
            values = {
                "change_ref": context.trigger.change_ref,
                "branch": context.trigger.branch,
                "repository": context.trigger.repository,
                "run_id": context.run_id,
            }
            version = str(settings["version"]).format(**values)
            content_ref = settings["content_ref"] or f"mock://{version}"
            artifact = ArtifactHandle(version=version, content_ref=content_ref.format(**values))

        return StageOutcome(
            success=True,
            output_ref=output_ref,
            metrics={key: float(value) for key, value in settings["metrics"].items()},
            artifact=artifact,
        )

    def calls_for(self, stage_id: str) -> list[RecordedStageCall]:
        return [call for call in self.calls if call.stage_id == stage_id]

    def reset(self) -> None:
        self.calls.clear()
