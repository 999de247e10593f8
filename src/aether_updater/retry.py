"""Retry and polling combinators used by the update pipeline."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from aether_updater.errors import RetryExhaustedError

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, int, float, BaseException], None]


def backoff_delay(retry_number: int, base_delay: float) -> float:
    """Delay before the *retry_number*-th retry (1-based): base, 2*base, 4*base, ..."""
    return base_delay * (2 ** (retry_number - 1))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: RetryHook | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run *operation* up to *attempts* times with exponential backoff.

    ``on_retry(attempt, attempts, delay, error)`` is called before each
    backoff sleep, where *attempt* is the number of the attempt about to run.
    Raises ``RetryExhaustedError`` wrapping the last failure.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            delay = backoff_delay(attempt - 1, base_delay)
            if on_retry is not None and last_error is not None:
                on_retry(attempt, attempts, delay, last_error)
            await sleep(delay)
        try:
            return await operation()
        except retry_on as exc:
            last_error = exc

    assert last_error is not None
    raise RetryExhaustedError(attempts, last_error) from last_error


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Outcome of ``poll_until``: the last probed value and whether it satisfied the check."""

    ok: bool
    value: T | None
    polls: int
    elapsed: float


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    check: Callable[[T], bool],
    *,
    timeout: float,
    interval: float,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult[T]:
    """Probe every *interval* seconds until *check* passes or *timeout* elapses.

    The number of probes is bounded by ``ceil(timeout / interval)`` as well
    as by the clock, so the loop terminates even when *sleep* does not
    actually wait.
    """
    max_polls = max(1, math.ceil(timeout / interval))
    start = clock()
    value: T | None = None
    polls = 0
    while polls < max_polls:
        polls += 1
        value = await probe()
        if check(value):
            return PollResult(ok=True, value=value, polls=polls, elapsed=clock() - start)
        if polls >= max_polls or clock() - start >= timeout:
            break
        await sleep(interval)
    return PollResult(ok=False, value=value, polls=polls, elapsed=clock() - start)
