"""In-memory implementation of SupportsCollectionStorage.

The default backend when no persistent storage is configured, and the
storage used by most tests.

Usage::

    from hexship.stdlib.adapters.memory import InMemoryCollectionStorage

    storage = InMemoryCollectionStorage()
    await storage.asave("runs", "run-1", {"status": "running"})
    doc = await storage.aload("runs", "run-1")
"""

from __future__ import annotations

import copy
from typing import Any


class InMemoryCollectionStorage:
    """In-memory ``SupportsCollectionStorage``.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store. Setting ``available = False`` makes every
    call raise ``ConnectionError``, which simulates an unreachable store.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise ConnectionError("in-memory store marked unavailable")

    async def asave(self, collection: str, key: str, data: dict[str, Any]) -> None:
        self._check()
        self._data.setdefault(collection, {})[key] = copy.deepcopy(data)

    async def aload(self, collection: str, key: str) -> dict[str, Any] | None:
        self._check()
        doc = self._data.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def aquery(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Query documents with optional equality filters."""
        self._check()
        docs = list(self._data.get(collection, {}).values())
        if filters:
            docs = [d for d in docs if all(d.get(k) == v for k, v in filters.items())]
        return [copy.deepcopy(d) for d in docs]

    async def adelete(self, collection: str, key: str) -> bool:
        self._check()
        return self._data.get(collection, {}).pop(key, None) is not None
