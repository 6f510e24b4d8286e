"""In-memory adapters."""

from hexship.stdlib.adapters.memory.collection_memory import InMemoryCollectionStorage

__all__ = ["InMemoryCollectionStorage"]
