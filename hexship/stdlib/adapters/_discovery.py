"""Static adapter aliases for the resolver.

A static registry keeps adapter imports (httpx, aiosqlite) out of bootstrap;
the class module is only imported when ``resolve()`` loads it.

Alias forms
-----------
For an adapter class ``MockStageAdapter`` with port type ``stage`` and short
name ``mock``:

- ``mock_stage_adapter``   (snake_case of class name)
- ``stage:mock``           (port-qualified)
- ``MockStageAdapter``     (CamelCase)

Examples
--------
>>> aliases = discover_adapter_aliases()
>>> aliases["stage:mock"]
'hexship.stdlib.adapters.mock.MockStageAdapter'
>>> aliases["http_deployment_target"]
'hexship.stdlib.adapters.http.HttpDeploymentTarget'
"""

from __future__ import annotations

import re
from functools import lru_cache


def _to_snake_case(name: str) -> str:
    """Convert CamelCase to snake_case.

    Examples
    --------
    >>> _to_snake_case("SQLiteCollectionStorage")
    'sq_lite_collection_storage'
    >>> _to_snake_case("MockDeploymentTarget")
    'mock_deployment_target'
    """
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    name = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", name)
    return name.lower()


# (class_name, full_module_path, port_type, short_name)
_ADAPTER_REGISTRY: list[tuple[str, str, str, str]] = [
    # Stage adapters
    ("MockStageAdapter", "hexship.stdlib.adapters.mock.MockStageAdapter", "stage", "mock"),
    (
        "CommandStageAdapter",
        "hexship.stdlib.adapters.command.CommandStageAdapter",
        "stage",
        "command",
    ),
    # Deployment targets
    (
        "MockDeploymentTarget",
        "hexship.stdlib.adapters.mock.MockDeploymentTarget",
        "deployment_target",
        "mock",
    ),
    (
        "HttpDeploymentTarget",
        "hexship.stdlib.adapters.http.HttpDeploymentTarget",
        "deployment_target",
        "http",
    ),
    # Storage
    (
        "InMemoryCollectionStorage",
        "hexship.stdlib.adapters.memory.InMemoryCollectionStorage",
        "storage",
        "memory",
    ),
    (
        "SQLiteCollectionStorage",
        "hexship.stdlib.adapters.sqlite.SQLiteCollectionStorage",
        "storage",
        "sqlite",
    ),
]

# Short names used in configuration files
_SHORT_ALIASES: dict[str, str] = {
    "mock": "hexship.stdlib.adapters.mock.MockStageAdapter",
    "command": "hexship.stdlib.adapters.command.CommandStageAdapter",
    "mock_target": "hexship.stdlib.adapters.mock.MockDeploymentTarget",
    "http_target": "hexship.stdlib.adapters.http.HttpDeploymentTarget",
    "memory": "hexship.stdlib.adapters.memory.InMemoryCollectionStorage",
    "sqlite": "hexship.stdlib.adapters.sqlite.SQLiteCollectionStorage",
}


@lru_cache(maxsize=1)
def discover_adapter_aliases() -> dict[str, str]:
    """Generate all adapter alias -> full_module_path mappings."""
    aliases: dict[str, str] = {}

    for class_name, full_path, port_type, short_name in _ADAPTER_REGISTRY:
        aliases[_to_snake_case(class_name)] = full_path
        aliases[f"{port_type}:{short_name}"] = full_path
        aliases[class_name] = full_path

    aliases.update(_SHORT_ALIASES)
    return aliases


def get_known_adapter_aliases() -> frozenset[str]:
    """Get all valid adapter alias names."""
    return frozenset(discover_adapter_aliases().keys())
