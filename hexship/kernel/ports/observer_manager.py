"""Observer Manager Port - interface for engine event observation.

Observers are read-only: they see run, stage, gate, artifact and rollout
events but cannot affect execution, and a failing observer never fails a run.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from hexship.kernel.orchestration.events import Event

# Type aliases for observer functions
ObserverFunc = Callable[["Event"], None]
AsyncObserverFunc = Callable[["Event"], Any]  # Returns awaitable


class Observer(Protocol):
    """Protocol for observers that monitor events."""

    async def handle(self, event: Event) -> None:
        """Handle an event (read-only, no return value)."""
        ...


@runtime_checkable
class ObserverManager(Protocol):
    """Port interface for event observation systems."""

    @abstractmethod
    def register(
        self,
        handler: Observer | ObserverFunc | AsyncObserverFunc,
        *,
        observer_id: str | None = None,
        event_types: Iterable[type[Event]] | type[Event] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Register an observer, optionally filtered to some event types.

        Returns
        -------
        str
            The observer id, usable with :meth:`unregister`
        """
        ...

    @abstractmethod
    def unregister(self, handler_id: str) -> bool:
        """Unregister an observer by ID; returns True if it was registered."""
        ...

    @abstractmethod
    async def notify(self, event: Event) -> None:
        """Deliver *event* to interested observers with fault isolation."""
        ...


__all__ = ["AsyncObserverFunc", "Observer", "ObserverFunc", "ObserverManager"]
