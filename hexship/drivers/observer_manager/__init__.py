"""Observer manager implementations."""

from hexship.drivers.observer_manager.local import LocalObserverManager

__all__ = ["LocalObserverManager"]
