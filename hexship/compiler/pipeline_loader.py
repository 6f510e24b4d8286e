"""Pipeline loader - parses ``kind: Pipeline`` YAML manifests.

Example manifest::

    apiVersion: hexship/v1
    kind: Pipeline
    metadata:
      name: service
    spec:
      adapters:
        build: command
        deploy: mock
      stages:
        - id: checkout
          capability: custom
        - id: build
          capability: build
          dependsOn: [checkout]
          retry: {maxAttempts: 3, backoffBase: 2}
          timeoutSeconds: 600
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
          environment: production
          dependsOn: [package]
      gates:
        - {metric: bugs, comparator: "<=", threshold: 0}
        - {metric: coverage, comparator: ">=", threshold: 80}
      canary:
        steps: [10, 50, 100]

A file may hold several manifests separated by ``---``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from hexship.kernel.domain.pipeline import PipelineDefinition, StageCapability
from hexship.kernel.exceptions import PipelineDefinitionError, ResolveError
from hexship.kernel.logging import get_logger

logger = get_logger(__name__)

PIPELINE_KIND = "Pipeline"


class ValidationReport:
    """Errors and warnings collected while validating a pipeline file."""

    __slots__ = ("_errors", "_warnings", "pipelines")

    def __init__(self) -> None:
        self._errors: list[str] = []
        self._warnings: list[str] = []
        self.pipelines: list[PipelineDefinition] = []

    @property
    def is_valid(self) -> bool:
        return not self._errors

    def add_error(self, message: str) -> None:
        self._errors.append(message)

    def add_warning(self, message: str) -> None:
        self._warnings.append(message)

    @property
    def errors(self) -> list[str]:
        return self._errors.copy()

    @property
    def warnings(self) -> list[str]:
        return self._warnings.copy()


def parse_manifest(document: Any) -> PipelineDefinition:
    """Build a :class:`PipelineDefinition` from one parsed manifest.

    Raises
    ------
    PipelineDefinitionError
        If the manifest shape or any stage is invalid
    """
    if not isinstance(document, dict):
        raise PipelineDefinitionError(
            f"Pipeline manifest must be a mapping, got {type(document).__name__}"
        )
    if document.get("kind") != PIPELINE_KIND:
        raise PipelineDefinitionError(
            f"Expected 'kind: {PIPELINE_KIND}', got 'kind: {document.get('kind')}'"
        )
    name = (document.get("metadata") or {}).get("name")
    spec = document.get("spec")
    if not isinstance(spec, dict):
        raise PipelineDefinitionError(f"Pipeline '{name}' has no 'spec' mapping")

    try:
        return PipelineDefinition.model_validate({"name": name, **spec})
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'pipeline'}: {err['msg']}"
            for err in e.errors()
        )
        raise PipelineDefinitionError(f"Invalid pipeline '{name}': {details}") from e


def load_pipelines_string(text: str) -> list[PipelineDefinition]:
    """Parse every manifest in a YAML string.

    Raises
    ------
    PipelineDefinitionError
        On YAML syntax errors, invalid manifests or duplicate pipeline names
    """
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"Invalid YAML: {e}") from e
    if not documents:
        raise PipelineDefinitionError("No pipeline manifest found")

    pipelines = [parse_manifest(doc) for doc in documents]
    names = [p.name for p in pipelines]
    if duplicates := sorted({n for n in names if names.count(n) > 1}):
        raise PipelineDefinitionError(f"Duplicate pipeline name(s): {', '.join(duplicates)}")
    return pipelines


def load_pipelines(path: str | Path) -> list[PipelineDefinition]:
    """Load every pipeline manifest in a YAML file."""
    path = Path(path)
    logger.debug("Loading pipelines from {path}", path=path)
    return load_pipelines_string(path.read_text(encoding="utf-8"))


def load_pipeline(path: str | Path, name: str | None = None) -> PipelineDefinition:
    """Load one pipeline from *path*, selecting *name* when the file holds several.

    Raises
    ------
    PipelineDefinitionError
        If the file is invalid, or *name* is ambiguous or unknown
    """
    pipelines = load_pipelines(path)
    if name is None:
        if len(pipelines) > 1:
            raise PipelineDefinitionError(
                f"{path} defines {len(pipelines)} pipelines; pass a name "
                f"({', '.join(p.name for p in pipelines)})"
            )
        return pipelines[0]
    for pipeline in pipelines:
        if pipeline.name == name:
            return pipeline
    raise PipelineDefinitionError(f"Pipeline '{name}' not found in {path}")


def validate_pipeline_file(path: str | Path) -> ValidationReport:
    """Validate a pipeline file without running it.

    Structural problems are errors. Adapters that cannot be resolved and
    gates without an analyze stage are reported too.
    """
    from hexship.kernel.resolver import resolve  # lazy: resolver imports stdlib aliases

    report = ValidationReport()
    try:
        report.pipelines = load_pipelines(path)
    except (OSError, PipelineDefinitionError) as e:
        report.add_error(str(e))
        return report

    for pipeline in report.pipelines:
        refs = [(f"adapters.{cap}", ref) for cap, ref in pipeline.adapters.items()]
        refs += [(f"stage '{s.id}'", s.adapter) for s in pipeline.stages if s.adapter]
        for where, ref in refs:
            try:
                resolve(ref.name)
            except ResolveError as e:
                report.add_error(f"{pipeline.name}: {where}: {e}")
        if pipeline.gates and not pipeline.stages_with(StageCapability.ANALYZE):
            report.add_warning(
                f"{pipeline.name}: gates are declared but no analyze stage reports metrics"
            )
        if pipeline.stages_with(StageCapability.DEPLOY) and pipeline.canary is None:
            report.add_warning(
                f"{pipeline.name}: deploy stages use the configured default canary policy"
            )
    return report
