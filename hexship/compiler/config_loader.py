"""Configuration loader for hexship.

Parses configuration into kernel config models. Two sources are supported:

1. **kind: Config YAML** - canonical format, loaded via explicit path or
   ``HEXSHIP_CONFIG_PATH`` env var.
2. **pyproject.toml [tool.hexship]** - auto-discovery fallback.

``${VAR}`` placeholders are replaced from the environment, and
``HEXSHIP_LOG_*`` variables override the logging section.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, cast

import yaml

from hexship.kernel.config.models import (
    AdapterConfig,
    ArtifactConfig,
    GateConfig,
    HexShipConfig,
    LoggingConfig,
    RolloutConfig,
    SchedulerConfig,
    StorageConfig,
    TriggerConfig,
)
from hexship.kernel.exceptions import ConfigurationError, ValidationError
from hexship.kernel.logging import get_logger

_TRUTHY_VALUES = frozenset({"true", "1", "yes", "on", "enabled"})
_FALSY_VALUES = frozenset({"false", "0", "no", "off", "disabled"})

CONFIG_PATH_ENV = "HEXSHIP_CONFIG_PATH"

logger = get_logger(__name__)


def _parse_bool_env(value: str) -> bool:
    """Parse a boolean environment variable value.

    Raises
    ------
    ValueError
        If value is not a recognized boolean string
    """
    normalized = value.lower().strip()
    if normalized in _TRUTHY_VALUES:
        return True
    if normalized in _FALSY_VALUES:
        return False
    expected = sorted(_TRUTHY_VALUES | _FALSY_VALUES)
    raise ValueError(f"Invalid boolean value: {value!r}. Expected one of: {expected}")


class ConfigLoader:
    """Loads and processes hexship configuration files."""

    ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

    def load_config_file(self, path: str | Path | None = None) -> HexShipConfig:
        """Load configuration from a ``kind: Config`` YAML or pyproject.toml.

        Parameters
        ----------
        path : str | Path | None
            Path to config file. If None, searches using discovery order.

        Raises
        ------
        FileNotFoundError
            If no configuration file is found
        ConfigurationError
            If the file content is invalid
        """
        config_path = self._find_config_file(path)
        logger.info("Loading configuration from {path}", path=config_path)
        if config_path.suffix in (".yaml", ".yml"):
            return self._load_yaml_config(config_path)
        return self._load_toml_config(config_path)

    def _load_yaml_config(self, config_path: Path) -> HexShipConfig:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ConfigurationError(
                str(config_path), f"expected a mapping, got {type(data).__name__}"
            )
        kind = data.get("kind")
        if kind != "Config":
            raise ConfigurationError(
                str(config_path), f"must use 'kind: Config' manifest format, got 'kind: {kind}'"
            )
        spec = data.get("spec") or {}
        if not isinstance(spec, dict):
            raise ConfigurationError(str(config_path), "'spec' must be a mapping")

        config = self.parse_config(self._substitute_env_vars(spec))
        return self._resolve_pipeline_paths(config, config_path.parent)

    def _load_toml_config(self, config_path: Path) -> HexShipConfig:
        with config_path.open("rb") as f:
            data = tomllib.load(f)

        if config_path.name == "pyproject.toml":
            section = data.get("tool", {}).get("hexship", {})
            if not section:
                logger.warning("No [tool.hexship] section found in pyproject.toml, using defaults")
                return self.parse_config({})
        elif "tool" in data and "hexship" in data.get("tool", {}):
            section = data["tool"]["hexship"]
        else:
            section = data

        config = self.parse_config(self._substitute_env_vars(section))
        return self._resolve_pipeline_paths(config, config_path.parent)

    def _find_config_file(self, path: str | Path | None) -> Path:
        """Find the configuration file.

        Discovery order:
        1. Explicit path argument
        2. ``HEXSHIP_CONFIG_PATH`` env var
        3. ``pyproject.toml`` with ``[tool.hexship]`` in CWD or a parent
        """
        if path:
            config_path = Path(path)
            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            return config_path

        if env_path := os.getenv(CONFIG_PATH_ENV):
            config_path = Path(env_path)
            if config_path.exists():
                logger.debug(
                    "Using config from {var}: {path}", var=CONFIG_PATH_ENV, path=config_path
                )
                return config_path
            logger.warning(
                "{var} set but file not found: {path}", var=CONFIG_PATH_ENV, path=config_path
            )

        current = Path.cwd()
        while True:
            pyproject = current / "pyproject.toml"
            if pyproject.exists():
                with pyproject.open("rb") as f:
                    data = tomllib.load(f)
                if "hexship" in data.get("tool", {}):
                    return pyproject
            if current == current.parent:
                break
            current = current.parent

        raise FileNotFoundError(
            "No configuration file found. Provide a kind: Config YAML path, "
            f"set {CONFIG_PATH_ENV}, or add [tool.hexship] to pyproject.toml"
        )

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively replace ``${VAR}`` placeholders with environment values.

        Unknown variables keep their placeholder.
        """
        if isinstance(data, str):

            def replacer(match: re.Match[str]) -> str:
                value = os.environ.get(match.group(1))
                if value is None:
                    logger.debug(
                        "Environment variable ${{{name}}} not found, keeping placeholder",
                        name=match.group(1),
                    )
                    return match.group(0)
                return value

            return self.ENV_VAR_PATTERN.sub(replacer, data)
        if isinstance(data, dict):
            return {key: self._substitute_env_vars(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        return data

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_config(self, data: dict[str, Any]) -> HexShipConfig:
        """Parse format-agnostic configuration data into :class:`HexShipConfig`.

        Raises
        ------
        ConfigurationError
            If a section has an unknown key or an invalid value
        """
        config = HexShipConfig(logging=self._parse_logging_config(data.get("logging") or {}))

        sections: list[tuple[str, type[Any]]] = [
            ("scheduler", SchedulerConfig),
            ("trigger", TriggerConfig),
            ("artifact", ArtifactConfig),
            ("storage", StorageConfig),
        ]
        for name, model in sections:
            if name in data:
                setattr(config, name, self._build(name, model, data[name] or {}))

        if "gate" in data:
            gate_data = data["gate"] or {}
            config.gate = GateConfig(
                bypass_token_digests=tuple(gate_data.get("bypass_token_digests") or ())
            )
        if "rollout" in data:
            rollout_data = dict(data["rollout"] or {})
            if "steps" in rollout_data:
                rollout_data["steps"] = tuple(float(s) for s in rollout_data["steps"])
            config.rollout = self._build("rollout", RolloutConfig, rollout_data)
            try:
                config.rollout.to_policy()
            except ValueError as e:
                raise ConfigurationError("rollout", str(e)) from e

        for capability, adapter_data in (data.get("adapters") or {}).items():
            config.adapters[str(capability)] = self._parse_adapter(
                f"adapters.{capability}", adapter_data
            )
        if "deployment_target" in data:
            config.deployment_target = self._parse_adapter(
                "deployment_target", data["deployment_target"]
            )
        config.pipelines = [str(p) for p in data.get("pipelines") or []]
        return config

    @staticmethod
    def _build(name: str, model: type[Any], values: dict[str, Any]) -> Any:
        try:
            return model(**values)
        except (TypeError, ValueError, ValidationError) as e:
            raise ConfigurationError(name, str(e)) from e

    @staticmethod
    def _parse_adapter(name: str, data: Any) -> AdapterConfig:
        if isinstance(data, str):
            return AdapterConfig(name=data)
        if not isinstance(data, dict) or "name" not in data:
            raise ConfigurationError(name, "expected an alias string or {name, params}")
        return AdapterConfig(name=str(data["name"]), params=dict(data.get("params") or {}))

    @staticmethod
    def _resolve_pipeline_paths(config: HexShipConfig, base: Path) -> HexShipConfig:
        config.pipelines = [
            str(path if (path := Path(p)).is_absolute() else base / path) for p in config.pipelines
        ]
        return config

    def _parse_logging_config(self, logging_data: dict[str, Any]) -> LoggingConfig:
        """Parse logging configuration with environment variable overrides.

        Environment variables take precedence over config file values:
        - HEXSHIP_LOG_LEVEL: Log level
        - HEXSHIP_LOG_FORMAT: Output format (console, json, structured, rich)
        - HEXSHIP_LOG_FILE: Optional file path for log output
        - HEXSHIP_LOG_COLOR: Use color output (true/false)
        - HEXSHIP_LOG_TIMESTAMP: Include timestamp (true/false)
        """
        level = str(logging_data.get("level", "INFO")).upper()
        format_type = str(logging_data.get("format", "structured")).lower()
        output_file = logging_data.get("output_file")
        use_color = logging_data.get("use_color", True)
        include_timestamp = logging_data.get("include_timestamp", True)

        if env_level := os.getenv("HEXSHIP_LOG_LEVEL"):
            level = env_level.upper()
            logger.debug("Overriding log level from env: {}", level)
        if env_format := os.getenv("HEXSHIP_LOG_FORMAT"):
            format_type = env_format.lower()
            logger.debug("Overriding log format from env: {}", format_type)
        if env_file := os.getenv("HEXSHIP_LOG_FILE"):
            output_file = env_file
        if env_color := os.getenv("HEXSHIP_LOG_COLOR"):
            try:
                use_color = _parse_bool_env(env_color)
            except ValueError as e:
                logger.warning("Invalid HEXSHIP_LOG_COLOR value: {}", e)
        if env_timestamp := os.getenv("HEXSHIP_LOG_TIMESTAMP"):
            try:
                include_timestamp = _parse_bool_env(env_timestamp)
            except ValueError as e:
                logger.warning("Invalid HEXSHIP_LOG_TIMESTAMP value: {}", e)

        if level not in ("TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError("logging", f"unknown level {level!r}")
        if format_type not in ("console", "json", "structured", "rich"):
            raise ConfigurationError("logging", f"unknown format {format_type!r}")

        return LoggingConfig(
            level=cast("Any", level),
            format=cast("Any", format_type),
            output_file=output_file,
            use_color=bool(use_color),
            include_timestamp=bool(include_timestamp),
            backtrace=bool(logging_data.get("backtrace", True)),
            diagnose=bool(logging_data.get("diagnose", False)),
        )


def load_config(path: str | Path | None = None) -> HexShipConfig:
    """Load configuration from file or return defaults when none is found."""
    try:
        return ConfigLoader().load_config_file(path)
    except FileNotFoundError:
        if path:
            raise
        logger.info("No configuration file found, using defaults")
        return get_default_config()


def get_default_config() -> HexShipConfig:
    """Default configuration: in-memory storage and the mock deployment target."""
    return HexShipConfig()
