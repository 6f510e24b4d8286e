"""RunRegistry lib - persisted run snapshots plus an append-only history.

Every transition the scheduler makes is recorded twice:

- the latest snapshot of the run in the ``runs`` collection
- one immutable entry in the ``run_history`` collection

The snapshot answers status queries; the history is the audit trail and the
unit of crash recovery.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from hexship.kernel.domain.run import RunStatus, run_from_storage, run_to_storage
from hexship.kernel.exceptions import ResourceNotFoundError
from hexship.kernel.logging import get_logger
from hexship.kernel.utils.timer import utcnow
from hexship.stdlib.lib_base import HexShipLib

if TYPE_CHECKING:
    from hexship.kernel.domain.run import Run
    from hexship.kernel.ports.data_store import SupportsCollectionStorage

logger = get_logger(__name__)

RUNS_COLLECTION = "runs"
HISTORY_COLLECTION = "run_history"


class RunRegistry(HexShipLib):
    """Registry of runs backed by collection storage.

    Active runs are also kept in memory so status queries see the live
    object the scheduler mutates.
    """

    def __init__(self, storage: SupportsCollectionStorage) -> None:
        self._storage = storage
        self._live: dict[str, Run] = {}
        self._last_sequence = 0

    # ------------------------------------------------------------------
    # Mutation API (called by ingestion and the scheduler)
    # ------------------------------------------------------------------

    async def register(self, run: Run) -> None:
        """Persist a newly created run."""
        self._live[run.run_id] = run
        await self.record(run, "run_created")

    async def record(self, run: Run, event: str, stage_id: str | None = None) -> None:
        """Persist the run snapshot and append one history entry."""
        snapshot = run_to_storage(run)
        entry: dict[str, Any] = {
            "run_id": run.run_id,
            "seq": self._next_sequence(),
            "event": event,
            "run_status": snapshot["status"],
            "recorded_at": utcnow().isoformat(),
        }
        if stage_id is not None:
            entry["stage_id"] = stage_id
            entry["stage"] = snapshot["stages"][stage_id]
        await self._storage.asave(HISTORY_COLLECTION, f"{run.run_id}:{entry['seq']}", entry)
        await self._storage.asave(RUNS_COLLECTION, run.run_id, snapshot)
        if run.status.terminal:
            self._live.pop(run.run_id, None)
        else:
            self._live[run.run_id] = run

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def aget(self, run_id: str) -> Run:
        """Get a run by ID.

        Raises
        ------
        ResourceNotFoundError
            If the run was never registered
        """
        if run_id in self._live:
            return self._live[run_id]
        data = await self._storage.aload(RUNS_COLLECTION, run_id)
        if data is None:
            raise ResourceNotFoundError("run", run_id)
        return run_from_storage(data)

    async def alist(
        self,
        status: RunStatus | str | None = None,
        limit: int = 50,
        repository: str | None = None,
    ) -> list[Run]:
        """List runs newest first, optionally filtered by status and repository."""
        filters: dict[str, Any] = {}
        if status:
            filters["status"] = str(status)
        if repository:
            filters["repository"] = repository
        docs = await self._storage.aquery(RUNS_COLLECTION, filters or None)
        docs.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        runs = []
        for doc in docs[:limit]:
            live = self._live.get(doc["run_id"])
            runs.append(live if live is not None else run_from_storage(doc))
        return runs

    async def ahistory(self, run_id: str) -> list[dict[str, Any]]:
        """Return the run's history entries in the order they were appended."""
        entries = await self._storage.aquery(HISTORY_COLLECTION, {"run_id": run_id})
        entries.sort(key=lambda e: e["seq"])
        return entries

    async def aincomplete(self) -> list[Run]:
        """Runs persisted as ``running``: interrupted by a restart or still queued."""
        docs = await self._storage.aquery(RUNS_COLLECTION, {"status": str(RunStatus.RUNNING)})
        docs.sort(key=lambda d: d.get("created_at") or "")
        return [run_from_storage(doc) for doc in docs if doc["run_id"] not in self._live]

    def _next_sequence(self) -> int:
        # Wall-clock nanoseconds keep ordering across restarts; strictly increasing here.
        self._last_sequence = max(time.time_ns(), self._last_sequence + 1)
        return self._last_sequence
