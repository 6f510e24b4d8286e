"""Shared timing helpers for stage and rollout execution."""

import time
from datetime import UTC, datetime


class Timer:
    """Lightweight timer that tracks elapsed milliseconds.

    Examples
    --------
    >>> t = Timer()
    >>> t.duration_ms >= 0
    True
    """

    __slots__ = ("_start",)

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def duration_ms(self) -> float:
        """Elapsed time in milliseconds since the timer started."""
        return (time.perf_counter() - self._start) * 1000

    @property
    def duration_str(self) -> str:
        """Elapsed time formatted with 2 decimal places."""
        return f"{self.duration_ms:.2f}"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)
