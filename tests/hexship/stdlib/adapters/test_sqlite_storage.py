"""Tests for the SQLite collection storage."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from hexship.kernel.domain.run import Run, RunStatus, TriggerContext
from hexship.stdlib.adapters.sqlite import SQLiteCollectionStorage
from hexship.stdlib.lib.run_registry import RunRegistry


@pytest_asyncio.fixture
async def storage(tmp_path: Path) -> AsyncIterator[SQLiteCollectionStorage]:
    store = SQLiteCollectionStorage(tmp_path / "state" / "hexship.db")
    yield store
    await store.aclose()


class TestSQLiteCollectionStorage:
    @pytest.mark.asyncio()
    async def test_save_and_load(self, storage: SQLiteCollectionStorage) -> None:
        await storage.asave("runs", "run-1", {"status": "running", "stages": {"a": 1}})

        assert await storage.aload("runs", "run-1") == {
            "status": "running",
            "stages": {"a": 1},
        }
        assert await storage.aload("runs", "missing") is None
        assert await storage.aload("other", "run-1") is None

    @pytest.mark.asyncio()
    async def test_save_overwrites(self, storage: SQLiteCollectionStorage) -> None:
        await storage.asave("runs", "run-1", {"status": "running"})
        await storage.asave("runs", "run-1", {"status": "succeeded"})

        assert await storage.aload("runs", "run-1") == {"status": "succeeded"}
        assert len(await storage.aquery("runs")) == 1

    @pytest.mark.asyncio()
    async def test_query_filters_in_insertion_order(
        self, storage: SQLiteCollectionStorage
    ) -> None:
        await storage.asave("runs", "b", {"id": "b", "status": "failed"})
        await storage.asave("runs", "a", {"id": "a", "status": "running"})
        await storage.asave("runs", "c", {"id": "c", "status": "failed"})

        assert [d["id"] for d in await storage.aquery("runs")] == ["b", "a", "c"]
        failed = await storage.aquery("runs", {"status": "failed"})
        assert [d["id"] for d in failed] == ["b", "c"]

    @pytest.mark.asyncio()
    async def test_delete(self, storage: SQLiteCollectionStorage) -> None:
        await storage.asave("artifacts", "1.0.0", {"version": "1.0.0"})

        assert await storage.adelete("artifacts", "1.0.0")
        assert not await storage.adelete("artifacts", "1.0.0")
        assert await storage.aload("artifacts", "1.0.0") is None

    @pytest.mark.asyncio()
    async def test_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "hexship.db"
        first = SQLiteCollectionStorage(path)
        await first.asave("deployments", "prod", {"state": "Healthy"})
        await first.aclose()

        second = SQLiteCollectionStorage(path)
        try:
            assert await second.aload("deployments", "prod") == {"state": "Healthy"}
        finally:
            await second.aclose()

    @pytest.mark.asyncio()
    async def test_reconnects_after_close(self, storage: SQLiteCollectionStorage) -> None:
        await storage.asave("runs", "run-1", {"status": "running"})
        await storage.aclose()

        assert await storage.aload("runs", "run-1") == {"status": "running"}

    @pytest.mark.asyncio()
    async def test_in_memory_database(self) -> None:
        storage = SQLiteCollectionStorage()
        try:
            await storage.asave("runs", "run-1", {"status": "running"})
            assert await storage.aload("runs", "run-1") == {"status": "running"}
        finally:
            await storage.aclose()

    @pytest.mark.asyncio()
    async def test_database_errors_surface_as_connection_error(self, tmp_path: Path) -> None:
        storage = SQLiteCollectionStorage(tmp_path)

        with pytest.raises(ConnectionError, match="SQLite storage error"):
            await storage.aload("runs", "run-1")

    @pytest.mark.asyncio()
    async def test_run_registry_on_sqlite(self, storage: SQLiteCollectionStorage) -> None:
        context = TriggerContext(repository="api", branch="main", change_ref="abc")
        run = Run.for_stages("svc", context, ["build"])
        await RunRegistry(storage).register(run)

        restored = await RunRegistry(storage).aget(run.run_id)

        assert restored.status == RunStatus.RUNNING
        assert restored.trigger == context
        assert [r.run_id for r in await RunRegistry(storage).aincomplete()] == [run.run_id]
