"""Compiler: turns configuration and pipeline documents into kernel models."""

from hexship.compiler.config_loader import ConfigLoader, get_default_config, load_config
from hexship.compiler.pipeline_loader import (
    ValidationReport,
    load_pipeline,
    load_pipelines,
    load_pipelines_string,
    validate_pipeline_file,
)

__all__ = [
    "ConfigLoader",
    "ValidationReport",
    "get_default_config",
    "load_config",
    "load_pipeline",
    "load_pipelines",
    "load_pipelines_string",
    "validate_pipeline_file",
]
