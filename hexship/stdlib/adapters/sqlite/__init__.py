"""SQLite adapters."""

from hexship.stdlib.adapters.sqlite.collection_sqlite import SQLiteCollectionStorage

__all__ = ["SQLiteCollectionStorage"]
