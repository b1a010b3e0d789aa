"""Exponential backoff helpers with jitter, plus a small async retry loop."""
from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from month_end.config import BACKOFF_POLICY
from month_end.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def compute_backoff_seconds(attempt: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Compute exponential backoff delay with jitter."""
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])  # type: ignore[index]
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])   # type: ignore[index]
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])  # type: ignore[index]
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])  # type: ignore[index]

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0 and delay > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: Optional[int] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    base: Optional[float] = None,
    description: str = "operation",
) -> T:
    """Await ``operation`` until it succeeds or ``attempts`` are used up.

    Only exceptions listed in ``retry_on`` are retried; the last one is re-raised.
    """
    max_attempts = int(attempts if attempts is not None else BACKOFF_POLICY["max_attempts"])  # type: ignore[index]
    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                raise
            delay = compute_backoff_seconds(attempt, base=base)
            logger.warning(
                "Retrying after transient failure",
                operation=description,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=round(delay, 3),
                error=str(exc),
            )
            await asyncio.sleep(delay)
            attempt += 1


__all__ = ["compute_backoff_seconds", "retry_async"]
