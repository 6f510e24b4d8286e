"""Local Observer Manager - in-process implementation of the observer port.

Provides event type filtering, per-observer timeouts, concurrency limits and
fault isolation: an observer that raises or hangs is logged and ignored.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from typing import TYPE_CHECKING, Any, cast

from hexship.kernel.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

    from hexship.kernel.orchestration.events import Event
    from hexship.kernel.ports.observer_manager import AsyncObserverFunc, Observer, ObserverFunc

logger = get_logger(__name__)

# Default configuration constants
DEFAULT_MAX_CONCURRENT_OBSERVERS = 10
DEFAULT_OBSERVER_TIMEOUT = 5.0


class FunctionObserver:
    """Wrapper to make functions implement the Observer protocol."""

    def __init__(self, func: ObserverFunc | AsyncObserverFunc) -> None:
        self._func = func
        self.__name__ = getattr(func, "__name__", "anonymous_observer")

    async def handle(self, event: Event) -> None:
        """Handle the event by calling the wrapped function."""
        result = self._func(event)
        if inspect.isawaitable(result):
            await cast("Awaitable[Any]", result)


def _normalize_event_types(
    event_types: Iterable[type[Event]] | type[Event] | None,
) -> tuple[type[Event], ...] | None:
    if event_types is None:
        return None
    if isinstance(event_types, type):
        return (event_types,)
    normalized = tuple(event_types)
    for event_type in normalized:
        if not isinstance(event_type, type):
            raise TypeError(f"event_types must contain classes, got {event_type!r}")
    return normalized


class LocalObserverManager:
    """Local standalone implementation of observer manager.

    This implementation provides:
    - Event type filtering for efficiency
    - Concurrent observer execution with a global limit
    - Fault isolation - observer failures don't crash the run
    - Timeout handling for slow observers
    """

    def __init__(
        self,
        max_concurrent_observers: int = DEFAULT_MAX_CONCURRENT_OBSERVERS,
        observer_timeout: float = DEFAULT_OBSERVER_TIMEOUT,
    ) -> None:
        """Initialize the local observer manager.

        Args
        ----
            max_concurrent_observers: Maximum number of observers to run concurrently
            observer_timeout: Default timeout in seconds for each observer
        """
        self._timeout = observer_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_observers)
        self._handlers: dict[str, Observer] = {}
        self._event_filters: dict[str, tuple[type[Event], ...] | None] = {}
        self._observer_timeouts: dict[str, float | None] = {}

    def register(
        self,
        handler: Observer | ObserverFunc | AsyncObserverFunc,
        *,
        observer_id: str | None = None,
        event_types: Iterable[type[Event]] | type[Event] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Register an observer with optional event type filtering."""
        resolved_id = observer_id or str(uuid.uuid4())
        if resolved_id in self._handlers:
            raise ValueError(f"Observer '{resolved_id}' already registered")
        if timeout is not None and timeout <= 0:
            raise ValueError("Observer timeout must be positive")

        if hasattr(handler, "handle"):
            observer = cast("Observer", handler)
        elif callable(handler):
            observer = FunctionObserver(handler)
        else:
            raise TypeError(
                f"Observer must be callable or implement Observer protocol, got {type(handler)}"
            )

        self._handlers[resolved_id] = observer
        self._event_filters[resolved_id] = _normalize_event_types(event_types)
        self._observer_timeouts[resolved_id] = timeout
        return resolved_id

    def unregister(self, handler_id: str) -> bool:
        """Unregister an observer by ID.

        Returns
        -------
            bool: True if observer was found and removed, False otherwise
        """
        found = self._handlers.pop(handler_id, None) is not None
        self._event_filters.pop(handler_id, None)
        self._observer_timeouts.pop(handler_id, None)
        return found

    async def notify(self, event: Event) -> None:
        """Notify all interested observers of an event.

        Errors are logged but don't affect execution.
        """
        observers = [
            (observer_id, observer)
            for observer_id, observer in self._handlers.items()
            if self._interested(observer_id, event)
        ]
        if not observers:
            return
        await asyncio.gather(
            *(self._dispatch(observer_id, observer, event) for observer_id, observer in observers)
        )

    def _interested(self, observer_id: str, event: Event) -> bool:
        event_types = self._event_filters.get(observer_id)
        return event_types is None or isinstance(event, event_types)

    async def _dispatch(self, observer_id: str, observer: Observer, event: Event) -> None:
        timeout = self._observer_timeouts.get(observer_id) or self._timeout
        handler_name = getattr(observer, "__name__", type(observer).__name__)
        async with self._semaphore:
            try:
                async with asyncio.timeout(timeout):
                    await observer.handle(event)
            except TimeoutError:
                logger.warning(
                    "Observer {handler} timed out after {timeout}s on {event_type}",
                    handler=handler_name,
                    timeout=timeout,
                    event_type=type(event).__name__,
                )
            except Exception as e:
                logger.warning(
                    "Observer {handler} failed for {event_type}: {error}",
                    handler=handler_name,
                    event_type=type(event).__name__,
                    error=e,
                )

    def clear(self) -> None:
        """Remove all registered observers."""
        self._handlers.clear()
        self._event_filters.clear()
        self._observer_timeouts.clear()

    def __len__(self) -> int:
        return len(self._handlers)
