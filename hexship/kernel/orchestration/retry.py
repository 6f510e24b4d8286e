"""Retry strategies with exponential backoff and jitter for stage execution.

The primary interface is ``execute_with_retry`` which wraps an async callable
with bounded attempts. Errors that expose ``retryable = False`` (see
:class:`~hexship.kernel.exceptions.StageError`) end the loop on first
occurrence.

Examples
--------
Basic usage with default config::

    config = RetryConfig(max_attempts=3)
    result = await execute_with_retry(my_async_fn, config)

From a stage's retry policy::

    config = RetryConfig.from_policy(stage.retry)
    result = await execute_with_retry(run_attempt, config, on_retry=log_retry)
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from hexship.kernel.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from hexship.kernel.domain.pipeline import RetryPolicy

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry behavior with exponential backoff.

    Parameters
    ----------
    max_attempts : int
        Total number of attempts. 1 means no retries (single attempt).
    delay : float
        Initial delay in seconds before the first retry.
    backoff : float
        Multiplier applied to the delay after each retry.
    max_delay : float
        Maximum delay cap in seconds.
    jitter : float
        Fraction of the computed delay added or removed at random (0 disables).
    """

    max_attempts: int = 1
    delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> RetryConfig:
        """Build a RetryConfig from a stage's :class:`RetryPolicy`.

        Examples
        --------
        >>> from hexship.kernel.domain.pipeline import RetryPolicy
        >>> cfg = RetryConfig.from_policy(RetryPolicy(max_attempts=3, backoff_base=0.5))
        >>> cfg.max_attempts
        3
        >>> cfg.delay
        0.5
        """
        return cls(
            max_attempts=policy.max_attempts,
            delay=policy.backoff_base,
            backoff=policy.backoff_factor,
            max_delay=policy.max_backoff,
            jitter=policy.jitter,
        )

    @property
    def has_retries(self) -> bool:
        """Whether this config enables retries (max_attempts > 1)."""
        return self.max_attempts > 1

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Compute the delay for a given attempt number (1-indexed).

        Parameters
        ----------
        attempt : int
            The attempt number that just failed (1-indexed).
        rng : random.Random | None
            Source of jitter; the module-level generator when omitted.

        Returns
        -------
        float
            Delay in seconds before the next attempt, never negative.

        Examples
        --------
        >>> cfg = RetryConfig(delay=1.0, backoff=2.0, max_delay=10.0)
        >>> cfg.compute_delay(1)
        1.0
        >>> cfg.compute_delay(3)
        4.0
        >>> cfg.compute_delay(10)
        10.0
        """
        base = min(self.delay * (self.backoff ** (attempt - 1)), self.max_delay)
        if not self.jitter or not base:
            return base
        spread = base * self.jitter
        offset = (rng or random).uniform(-spread, spread)
        return max(0.0, base + offset)


def is_retryable(error: BaseException) -> bool:
    """Whether *error* may be retried; errors without a flag are transient."""
    return bool(getattr(error, "retryable", True))


async def execute_with_retry(
    fn: Callable[[int], Awaitable[Any]],
    config: RetryConfig,
    *,
    on_retry: Callable[[int, int, Exception, float], Awaitable[Any] | Any] | None = None,
    should_stop: Callable[[], bool] | None = None,
    sleep: Callable[[float], Awaitable[bool]] | None = None,
) -> Any:
    """Execute an async callable with retry and exponential backoff.

    Parameters
    ----------
    fn : Callable[[int], Awaitable[Any]]
        Async callable receiving the 1-indexed attempt number.
    config : RetryConfig
        Retry configuration.
    on_retry : callable, optional
        Callback invoked before each retry sleep. Receives
        ``(attempt, max_attempts, error, delay)``; may be a coroutine function.
    should_stop : callable, optional
        Checked before each retry; when it returns True the last error is
        raised without further attempts (used for cancellation).
    sleep : callable, optional
        Waits out the backoff delay and returns True when woken early, in
        which case the last error is raised at once. Defaults to
        ``asyncio.sleep``, which is never interrupted.

    Returns
    -------
    Any
        The return value of *fn*.

    Examples
    --------
    >>> import asyncio
    >>> async def ok(attempt): return 42
    >>> asyncio.run(execute_with_retry(ok, RetryConfig()))
    42
    """
    last_error: Exception | None = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await fn(attempt)
        except Exception as exc:
            last_error = exc
            if (
                attempt < config.max_attempts
                and is_retryable(exc)
                and not (should_stop is not None and should_stop())
            ):
                delay = config.compute_delay(attempt)
                if on_retry is not None:
                    maybe_coro = on_retry(attempt, config.max_attempts, exc, delay)
                    if asyncio.iscoroutine(maybe_coro):
                        await maybe_coro
                if sleep is None:
                    await asyncio.sleep(delay)
                elif await sleep(delay):
                    raise
                continue
            raise

    if last_error is not None:  # pragma: no cover
        raise last_error
    return None  # pragma: no cover
