"""Centralized logging configuration for hexship using Loguru.

Provides consistent logging across the engine with support for:
- Multiple output formats (console, JSON, structured, rich)
- Environment-based lazy configuration
- Run correlation IDs carried through ``ContextVar``
- Idempotent configuration

Examples
--------
Basic usage:

>>> from hexship.kernel.logging import get_logger
>>> logger = get_logger(__name__)
>>> logger.info("Run started", run_id="abc123")

Configure logging globally::

    from hexship.kernel.logging import configure_logging
    configure_logging(level="DEBUG", format="json")
"""

from __future__ import annotations

import contextvars
import os
import sys
from contextlib import suppress
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from loguru import Logger

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["console", "json", "structured", "rich"]

_CURRENT_CONFIG: dict[str, Any] | None = None
_HANDLER_IDS: list[int] = []

# Correlation ID (usually the run id) for tracing a run across concurrent stages
correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def _patch_record(record: Any) -> None:
    record["extra"].setdefault("cid", correlation_id.get())


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "structured",
    output_file: str | Path | None = None,
    use_color: bool = True,
    include_timestamp: bool = True,
    force_reconfigure: bool = False,
    backtrace: bool = True,
    diagnose: bool = False,
) -> None:
    """Configure global logging for hexship.

    Calling it again with the same settings is a no-op. Only handlers added by
    this function are removed on reconfiguration, so pytest's capture handlers
    are left alone.

    Parameters
    ----------
    level : LogLevel, default="INFO"
        Minimum log level to output
    format : LogFormat, default="structured"
        Output format:
        - "console": plain single-line output
        - "json": serialized records for log aggregation
        - "structured": colored Loguru format with module and run id
        - "rich": Rich console handler
    output_file : str | Path | None, default=None
        Optional file path; file output is always JSON and rotated
    use_color : bool, default=True
        Use ANSI colors in structured format (auto-disabled for non-TTY)
    include_timestamp : bool, default=True
        Include timestamp in log output
    force_reconfigure : bool, default=False
        Reconfigure even if the settings did not change
    backtrace : bool, default=True
        Extend tracebacks beyond the catching frame
    diagnose : bool, default=False
        Show variable values in tracebacks (keep off in production)
    """
    global _CURRENT_CONFIG

    current_config = {
        "level": level,
        "format": format,
        "output_file": str(output_file) if output_file else None,
        "use_color": use_color,
        "include_timestamp": include_timestamp,
        "backtrace": backtrace,
        "diagnose": diagnose,
    }

    if not force_reconfigure and current_config == _CURRENT_CONFIG:
        return

    for handler_id in _HANDLER_IDS:
        with suppress(ValueError):
            logger.remove(handler_id)
    _HANDLER_IDS.clear()

    logger.configure(patcher=_patch_record)

    if format == "rich":
        rich_handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            markup=False,
            show_time=include_timestamp,
            show_level=True,
            show_path=True,
        )
        handler_id = logger.add(
            sink=rich_handler,
            level=level,
            format="{message}",
            backtrace=backtrace,
            diagnose=diagnose,
        )
    elif format == "json":
        handler_id = logger.add(
            sink=sys.stderr,
            level=level,
            serialize=True,
            backtrace=backtrace,
            diagnose=diagnose,
        )
    elif format == "structured":
        colorize = use_color and sys.stderr.isatty()
        timestamp_fmt = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> " if include_timestamp else ""
        color_level = "<level>{level: <8}</level>" if colorize else "{level: <8}"
        structured_format = (
            f"{timestamp_fmt}[{color_level}]"
            "<cyan>{name}:{function}:{line}</cyan> run={extra[cid]} | <level>{message}</level>"
        )
        handler_id = logger.add(
            sink=sys.stderr,
            level=level,
            format=structured_format,
            colorize=colorize,
            backtrace=backtrace,
            diagnose=diagnose,
        )
    else:  # console
        timestamp_fmt = "{time:YYYY-MM-DD HH:mm:ss} " if include_timestamp else ""
        handler_id = logger.add(
            sink=sys.stderr,
            level=level,
            format=f"{timestamp_fmt}{{level: <8}} | {{name}} | {{message}}",
            colorize=False,
            backtrace=backtrace,
            diagnose=diagnose,
        )
    _HANDLER_IDS.append(handler_id)

    if output_file:
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        handler_id = logger.add(
            sink=output_path,
            level=level,
            serialize=True,
            rotation="10 MB",
            retention="1 week",
            backtrace=backtrace,
            diagnose=diagnose,
        )
        _HANDLER_IDS.append(handler_id)

    _CURRENT_CONFIG = current_config


@lru_cache(maxsize=256)
def get_logger(name: str) -> Logger:
    """Get a logger bound with the given module name (cached).

    Parameters
    ----------
    name : str
        Logger name, typically ``__name__`` from the calling module

    Returns
    -------
    loguru.Logger
        Logger instance bound with the module name

    Examples
    --------
    >>> from hexship.kernel.logging import get_logger, set_correlation_id
    >>> set_correlation_id("run-123")
    >>> logger = get_logger(__name__)
    >>> logger.info("Dispatching stage {stage}", stage="build")
    """
    _ensure_configured()
    return logger.bind(module=name)


def set_correlation_id(cid: str) -> contextvars.Token[str]:
    """Set the correlation ID (run id) for the current async context."""
    return correlation_id.set(cid)


def get_correlation_id() -> str:
    """Get the current correlation ID, or ``"-"`` when unset.

    Examples
    --------
    >>> from hexship.kernel.logging import get_correlation_id
    >>> get_correlation_id()
    '-'
    """
    return correlation_id.get()


def reset_correlation_id(token: contextvars.Token[str]) -> None:
    """Restore the correlation ID that was active before ``set_correlation_id``."""
    correlation_id.reset(token)


def _ensure_configured() -> None:
    """Apply default configuration from ``HEXSHIP_LOG_*`` env vars if none exists."""
    if _CURRENT_CONFIG is None:
        level = os.getenv("HEXSHIP_LOG_LEVEL", "INFO").upper()
        format_type = os.getenv("HEXSHIP_LOG_FORMAT", "structured").lower()
        configure_logging(level=level, format=format_type)  # type: ignore[arg-type]
