"""Base class for engine libraries (libs).

Libs are the stateful services the engine composes: the run registry, gate
evaluator, artifact manager, rollout controller and trigger ingestion. Each
receives its ports through the constructor.

Lifecycle
---------
1. The engine instantiates the lib and calls :meth:`asetup`.
2. Runs use the lib while the engine is serving.
3. On shutdown the engine calls :meth:`ateardown`.
"""

from __future__ import annotations


class HexShipLib:
    """Base class for engine libraries."""

    async def asetup(self) -> None:
        """Called once before the engine accepts work.

        Override to perform one-time initialisation (loading persisted
        state, warming caches, etc.).
        """

    async def ateardown(self) -> None:
        """Called once when the engine shuts down.

        Override to release resources, flush buffers, etc.
        """
