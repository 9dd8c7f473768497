"""Bounded exponential backoff shared by asset processing and dispatch."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

SleepCallable = Callable[[float], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY) -> float:
    """Return the delay in seconds to wait before ``attempt`` (1-indexed).

    The first attempt never waits; attempt *k* waits ``base_delay * 2**(k-1)``.
    """
    if attempt <= 1:
        return 0.0
    return base_delay * (2 ** (attempt - 1))


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: SleepCallable = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds or ``max_attempts`` is reached.

    Exceptions outside ``retry_on`` propagate immediately. After the final
    attempt the last exception is re-raised.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            await sleep(backoff_delay(attempt, base_delay))
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, exc, backoff_delay(attempt + 1, base_delay))
    raise RuntimeError("unreachable")  # pragma: no cover
