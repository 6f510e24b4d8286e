"""Pipeline definition models.

A :class:`PipelineDefinition` is the static, immutable schema a Run executes:
stages forming a directed acyclic graph, each with a capability kind,
dependencies, a retry policy and a timeout, plus the quality-gate conditions
and an optional canary policy for deploy stages.

These pydantic models accept both ``snake_case`` and the ``camelCase`` keys
used by pipeline documents (``dependsOn``, ``maxAttempts``,
``timeoutSeconds``, ...).

Example::

    pipeline = PipelineDefinition.model_validate({
        "name": "service",
        "stages": [
            {"id": "build", "capability": "build"},
            {"id": "analyze", "capability": "analyze", "dependsOn": ["build"]},
            {"id": "package", "capability": "package", "dependsOn": ["analyze"]},
        ],
        "gates": [{"metric": "bugs", "comparator": "<=", "threshold": 0}],
    })
    pipeline.waves()  # [["build"], ["analyze"], ["package"]]
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from enum import Enum, StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator
from pydantic.alias_generators import to_camel

from hexship.kernel.exceptions import (
    CycleDetectedError,
    DuplicateStageError,
    MissingDependencyError,
    PipelineDefinitionError,
)


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class StageCapability(StrEnum):
    """Kind of work a stage performs; selects the external tool adapter."""

    BUILD = "build"
    ANALYZE = "analyze"
    GATE = "gate"
    PACKAGE = "package"
    DEPLOY = "deploy"
    CUSTOM = "custom"


class RetryPolicy(_DefinitionModel):
    """Bounded retry with exponential backoff and jitter.

    ``max_attempts`` counts the first attempt, so ``1`` disables retries.
    """

    max_attempts: int = Field(default=1, ge=1, description="Total attempts including the first")
    backoff_base: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    backoff_factor: float = Field(default=2.0, ge=1, description="Multiplier per retry")
    max_backoff: float = Field(default=60.0, ge=0, description="Cap on a single delay")
    jitter: float = Field(
        default=0.1, ge=0, le=1, description="Random +/- fraction applied to each delay"
    )


class AdapterRef(_DefinitionModel):
    """Reference to an external tool adapter by alias or dotted class path."""

    name: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


class StageDefinition(_DefinitionModel):
    """One unit of pipeline work with declared dependencies."""

    id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    capability: StageCapability = StageCapability.CUSTOM
    depends_on: tuple[str, ...] = ()
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_seconds: float | None = Field(default=None, gt=0)
    optional: bool = False
    environment: str | None = None
    requires_gate: bool | None = None
    adapter: AdapterRef | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_environment(self) -> Self:
        if self.capability == StageCapability.DEPLOY and not self.environment:
            raise ValueError(f"deploy stage '{self.id}' must name an environment")
        return self

    @property
    def mandatory(self) -> bool:
        return not self.optional

    @property
    def gated(self) -> bool:
        """Whether a failing quality gate blocks this stage."""
        if self.requires_gate is not None:
            return self.requires_gate
        return self.capability in (StageCapability.PACKAGE, StageCapability.DEPLOY)


class Comparator(StrEnum):
    """Threshold comparison applied as ``metric <op> threshold``."""

    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    EQ = "eq"
    NE = "ne"

    @property
    def symbol(self) -> str:
        return _COMPARATOR_SYMBOLS[self]

    def compare(self, value: float, threshold: float) -> bool:
        return _COMPARATOR_FUNCS[self](value, threshold)


_COMPARATOR_SYMBOLS = {
    Comparator.LT: "<",
    Comparator.LE: "<=",
    Comparator.GT: ">",
    Comparator.GE: ">=",
    Comparator.EQ: "==",
    Comparator.NE: "!=",
}
_COMPARATOR_FUNCS: dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.LT: operator.lt,
    Comparator.LE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GE: operator.ge,
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
}
_SYMBOL_TO_COMPARATOR = {symbol: comparator for comparator, symbol in _COMPARATOR_SYMBOLS.items()}


class GateCondition(_DefinitionModel):
    """A single quality-gate threshold.

    The condition fails when ``metric <comparator> threshold`` is false. When
    ``warn_threshold`` is set, a value that passes ``threshold`` but not
    ``warn_threshold`` lands in the warning band.
    """

    metric: str = Field(min_length=1)
    comparator: Comparator
    threshold: float
    warn_threshold: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_comparator(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            raw = data.get("comparator")
            if isinstance(raw, str) and raw.strip() in _SYMBOL_TO_COMPARATOR:
                data = {**data, "comparator": _SYMBOL_TO_COMPARATOR[raw.strip()]}
        return data

    @property
    def name(self) -> str:
        return f"{self.metric} {self.comparator.symbol} {self.threshold:g}"


class CanaryPolicy(_DefinitionModel):
    """Progressive rollout steps and health observation parameters.

    ``steps`` are traffic percentages, strictly increasing, ending at 100.
    """

    steps: tuple[float, ...] = (10.0, 50.0, 100.0)
    observation_window_seconds: float = Field(default=30.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    failure_threshold: float = Field(default=0.05, ge=0, le=1)
    min_samples: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_steps(self) -> Self:
        if not self.steps:
            raise ValueError("canary steps cannot be empty")
        if any(step <= 0 or step > 100 for step in self.steps):
            raise ValueError(f"canary steps must be within (0, 100], got {list(self.steps)}")
        if any(b <= a for a, b in zip(self.steps, self.steps[1:], strict=False)):
            raise ValueError(f"canary steps must be strictly increasing, got {list(self.steps)}")
        if self.steps[-1] != 100:
            raise ValueError("the last canary step must be 100")
        return self


class _Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


class PipelineDefinition(_DefinitionModel):
    """Immutable stage graph plus gate and rollout policy."""

    name: str = Field(min_length=1)
    stages: tuple[StageDefinition, ...]
    gates: tuple[GateCondition, ...] = ()
    canary: CanaryPolicy | None = None
    adapters: dict[StageCapability, AdapterRef] = Field(default_factory=dict)

    _by_id: dict[str, StageDefinition] = PrivateAttr(default_factory=dict)
    _forward: dict[str, tuple[str, ...]] = PrivateAttr(default_factory=dict)
    _waves: list[list[str]] = PrivateAttr(default_factory=list)

    @model_validator(mode="after")
    def _validate_graph(self) -> Self:
        by_id: dict[str, StageDefinition] = {}
        for stage in self.stages:
            if stage.id in by_id:
                raise DuplicateStageError(f"Stage '{stage.id}' is defined more than once")
            by_id[stage.id] = stage

        for stage in self.stages:
            missing = [dep for dep in stage.depends_on if dep not in by_id]
            if missing:
                raise MissingDependencyError(
                    f"Stage '{stage.id}' depends on unknown stage(s): {', '.join(missing)}"
                )

        graph = {stage.id: stage.depends_on for stage in self.stages}
        if cycle := detect_cycle(graph):
            raise CycleDetectedError(cycle)

        forward: dict[str, list[str]] = {stage.id: [] for stage in self.stages}
        for stage in self.stages:
            for dep in stage.depends_on:
                forward[dep].append(stage.id)

        self._by_id = by_id
        self._forward = {key: tuple(value) for key, value in forward.items()}
        self._waves = _compute_waves(self.stages, self._forward)

        if self.gates:
            for stage in self.stages:
                if stage.gated and not any(
                    by_id[up].capability == StageCapability.ANALYZE
                    for up in self.upstream(stage.id)
                ):
                    raise PipelineDefinitionError(
                        f"Stage '{stage.id}' requires the quality gate but does not "
                        "depend on an analyze stage"
                    )
        return self

    # ------------------------------------------------------------------
    # Graph queries
    # ------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        return [stage.id for stage in self.stages]

    def stage(self, stage_id: str) -> StageDefinition:
        """Return the stage named *stage_id*.

        Raises
        ------
        KeyError
            If no stage has that id
        """
        return self._by_id[stage_id]

    def dependencies(self, stage_id: str) -> frozenset[str]:
        """Direct dependencies of *stage_id*."""
        return frozenset(self._by_id[stage_id].depends_on)

    def direct_dependents(self, stage_id: str) -> tuple[str, ...]:
        return self._forward[stage_id]

    def dependents(self, stage_id: str) -> set[str]:
        """All stages that transitively depend on *stage_id*."""
        seen: set[str] = set()
        stack = list(self._forward[stage_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._forward[current])
        return seen

    def upstream(self, stage_id: str) -> set[str]:
        """All stages *stage_id* transitively depends on."""
        seen: set[str] = set()
        stack = list(self._by_id[stage_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._by_id[current].depends_on)
        return seen

    def waves(self) -> list[list[str]]:
        """Topological layers; stages in one wave have no dependency on each other.

        Examples
        --------
            # For: build -> (analyze, test) -> package
            # Returns: [["build"], ["analyze", "test"], ["package"]]
        """
        return [list(wave) for wave in self._waves]

    def stages_with(self, capability: StageCapability) -> list[StageDefinition]:
        return [stage for stage in self.stages if stage.capability == capability]


def detect_cycle(graph: Mapping[str, tuple[str, ...] | frozenset[str] | set[str]]) -> str | None:
    """Detect a cycle using DFS with three-state coloring.

    Examples
    --------
    >>> detect_cycle({"a": ("b",), "b": ("c",), "c": ("a",)})
    'Cycle detected: a -> b -> c -> a'
    >>> detect_cycle({"a": ("b",), "b": ()}) is None
    True
    """
    colors = dict.fromkeys(graph, _Color.WHITE)

    def dfs(node: str, path: list[str]) -> str | None:
        if colors[node] == _Color.GRAY:
            cycle = path[path.index(node) :] + [node]
            return f"Cycle detected: {' -> '.join(cycle)}"
        if colors[node] == _Color.BLACK:
            return None

        colors[node] = _Color.GRAY
        path.append(node)
        for dep in graph.get(node, ()):
            if dep in colors and (result := dfs(dep, path)):
                return result
        path.pop()
        colors[node] = _Color.BLACK
        return None

    for node in graph:
        if colors[node] == _Color.WHITE and (result := dfs(node, [])):
            return result
    return None


def _compute_waves(
    stages: tuple[StageDefinition, ...], forward: dict[str, tuple[str, ...]]
) -> list[list[str]]:
    in_degrees = {stage.id: len(stage.depends_on) for stage in stages}
    waves: list[list[str]] = []
    while in_degrees:
        current = [stage_id for stage_id, degree in in_degrees.items() if degree == 0]
        if not current:
            raise CycleDetectedError(
                f"No stages with zero in-degree found. Remaining stages: {list(in_degrees)}"
            )
        waves.append(current)
        for stage_id in current:
            del in_degrees[stage_id]
            for dependent in forward[stage_id]:
                if dependent in in_degrees:
                    in_degrees[dependent] -= 1
    return waves
