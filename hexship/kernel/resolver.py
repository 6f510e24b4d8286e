"""Module path resolver for hexship adapters.

Adapters are named in configuration by alias (``command``, ``stage:mock``,
``MockDeploymentTarget``) or by full module path
(``myco.ci.adapters.GradleAdapter``) and loaded through Python's import
system.

Examples
--------
>>> from hexship.kernel.resolver import resolve
>>> resolve("stage:mock").__name__
'MockStageAdapter'
"""

from __future__ import annotations

import importlib
from typing import Any

from hexship.kernel.exceptions import ResolveError

# User-registered aliases, checked before the built-in ones
_user_aliases: dict[str, str] = {}


def register_alias(alias: str, full_path: str) -> None:
    """Register a short *alias* for a module path.

    Examples
    --------
    >>> register_alias("gradle", "myco.ci.adapters.GradleAdapter")
    """
    _user_aliases[alias] = full_path


def resolve(kind: str) -> type[Any]:
    """Resolve an alias or full module path to a class.

    Raises
    ------
    ResolveError
        If the module or class cannot be found
    """
    if kind in _user_aliases:
        kind = _user_aliases[kind]

    from hexship.stdlib.adapters._discovery import (
        discover_adapter_aliases,  # lazy: stdlib imports the kernel
    )

    kind = discover_adapter_aliases().get(kind, kind)

    if "." not in kind:
        raise ResolveError(
            kind,
            "Must be a known adapter alias or a full module path "
            "(e.g., 'hexship.stdlib.adapters.command.CommandStageAdapter')",
        )

    module_path, class_name = kind.rsplit(".", 1)
    try:
        module = importlib.import_module(module_path)
    except ModuleNotFoundError as e:
        raise ResolveError(kind, f"Module '{module_path}' not found: {e}") from e
    except ImportError as e:
        raise ResolveError(kind, f"Failed to import '{module_path}': {e}") from e

    try:
        cls = getattr(module, class_name)
    except AttributeError as e:
        available = [name for name in dir(module) if not name.startswith("_")]
        raise ResolveError(
            kind,
            f"Class '{class_name}' not found in '{module_path}'. "
            f"Available: {', '.join(available[:10])}",
        ) from e

    if not isinstance(cls, type):
        raise ResolveError(kind, f"'{class_name}' is not a class (got {type(cls).__name__})")

    return cls


def instantiate(kind: str, params: dict[str, Any] | None = None) -> Any:
    """Resolve *kind* and construct it with *params* as keyword arguments.

    Raises
    ------
    ResolveError
        If resolution fails or the constructor rejects the params
    """
    cls = resolve(kind)
    try:
        return cls(**(params or {}))
    except TypeError as e:
        raise ResolveError(kind, f"Invalid parameters {sorted(params or {})}: {e}") from e
