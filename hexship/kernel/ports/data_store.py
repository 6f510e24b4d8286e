"""Collection storage port used for all persisted engine state.

Collections used by the engine
------------------------------
+---------------------+------------------------------------------------+
| Collection          | Contents                                       |
+=====================+================================================+
| ``runs``            | Latest snapshot of each run                    |
| ``run_history``     | Append-only stage/run transitions              |
| ``artifacts``       | Versioned artifact registry                    |
| ``deployments``     | Per-environment rollout record                 |
| ``gate_decisions``  | Gate verdict per run                           |
| ``gate_bypasses``   | Append-only bypass audit log                   |
+---------------------+------------------------------------------------+
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SupportsCollectionStorage(Protocol):
    """Collection-scoped document storage.

    Each record is a ``dict[str, Any]`` identified by a string key inside a
    named collection. Adapters raise ``ConnectionError`` (or ``OSError``)
    when the backing store is unreachable.
    """

    @abstractmethod
    async def asave(self, collection: str, key: str, data: dict[str, Any]) -> None:
        """Save a document to a collection (upsert semantics).

        Args
        ----
            collection: The collection name (e.g. ``"runs"``).
            key: Unique identifier within the collection.
            data: The document to store.
        """
        ...

    @abstractmethod
    async def aload(self, collection: str, key: str) -> dict[str, Any] | None:
        """Load a document by key.  Returns ``None`` if not found."""
        ...

    @abstractmethod
    async def aquery(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Query documents in a collection with optional equality filters."""
        ...

    @abstractmethod
    async def adelete(self, collection: str, key: str) -> bool:
        """Delete a document.  Returns ``True`` if it existed."""
        ...


__all__ = ["SupportsCollectionStorage"]
