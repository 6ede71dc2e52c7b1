"""Deadline helpers for external calls that may hang."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _consume_abandoned(task: asyncio.Task) -> None:
    # Abandoned operations may still fail later; retrieve the result so the
    # loop does not report an unobserved exception.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation failed after its deadline: %s", exc)


async def bounded_wait(operation: Awaitable[T], timeout: float) -> T:
    """Wait for *operation* for at most *timeout* seconds.

    The operation's result or exception is propagated unchanged when it
    finishes first. When the deadline expires first a :class:`TimeoutError`
    is raised and the operation is left running; callers that need it to
    unwind must cancel it through their own signal.
    """

    try:
        limit = float(timeout)
    except (TypeError, ValueError) as exc:
        raise ValueError("timeout must be numeric") from exc
    if not math.isfinite(limit) or limit <= 0:
        raise ValueError("timeout must be a positive finite number of seconds")

    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=limit)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_consume_abandoned)
    raise TimeoutError(f"The operation has timed out after {limit:g}s")


def ceil_period(window: float, budget: int) -> int:
    """Return the per-iteration period for *window* split across *budget* retries."""

    if budget <= 0:
        raise ValueError("budget must be positive")
    if window <= 0:
        raise ValueError("window must be positive")
    return int(math.ceil(float(window) / float(budget)))


__all__ = ["bounded_wait", "ceil_period"]
