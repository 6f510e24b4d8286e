"""Per-run cooperative cancellation token."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Signals in-flight stages and rollouts that their run was cancelled.

    Cancellation is cooperative: holders check :attr:`cancelled` between
    steps, or race their work against :meth:`wait`.

    Examples
    --------
    >>> token = CancellationToken()
    >>> token.cancelled
    False
    >>> token.cancel("operator request")
    >>> token.cancelled, token.reason
    (True, 'operator request')
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True if woken early by cancellation."""
        if self.cancelled:
            return True
        try:
            async with asyncio.timeout(seconds):
                await self._event.wait()
        except TimeoutError:
            return False
        return True
