"""Retry driver for saturated permit pools.

One logical acquire moves through Attempting -> Success | Exhausted |
FatalError. Only :class:`CapacityExceeded` is retried, after a fixed
interval; every other exception leaves the loop immediately.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from pottery import ContextTimer

from .exceptions import CapacityExceeded

log = structlog.get_logger(__name__)

T = TypeVar("T")


def retry(
    attempt: Callable[[], T],
    *,
    max_attempts: int,
    retry_interval: float,
    name: str,
    attempt_count: int = 0,
) -> T:
    """Call ``attempt`` until it succeeds or retries run out.

    Sleeps on the calling thread between attempts.

    Args:
        attempt: One acquisition attempt; raises CapacityExceeded when full
        max_attempts: Number of retries after the first attempt
        retry_interval: Seconds to wait between attempts
        name: Semaphore name, for errors and logs
        attempt_count: Retries already spent by the caller

    Raises:
        CapacityExceeded: If every attempt found the pool full
    """
    attempts = 0
    with ContextTimer() as timer:
        while True:
            attempts += 1
            try:
                return attempt()
            except CapacityExceeded as exc:
                if attempt_count >= max_attempts:
                    _log_exhausted(name, attempts, timer.elapsed())
                    raise CapacityExceeded(name, exc.capacity, attempts) from None
                attempt_count += 1
                log.debug(
                    "permit_retry",
                    semaphore=name,
                    attempt=attempt_count,
                    max_attempts=max_attempts,
                    delay=retry_interval,
                )
            time.sleep(retry_interval)


async def aretry(
    attempt: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    retry_interval: float,
    name: str,
    attempt_count: int = 0,
) -> T:
    """Async version of :func:`retry`.

    Waits with ``asyncio.sleep`` so other tasks keep running in between.
    """
    attempts = 0
    with ContextTimer() as timer:
        while True:
            attempts += 1
            try:
                return await attempt()
            except CapacityExceeded as exc:
                if attempt_count >= max_attempts:
                    _log_exhausted(name, attempts, timer.elapsed())
                    raise CapacityExceeded(name, exc.capacity, attempts) from None
                attempt_count += 1
                log.debug(
                    "permit_retry",
                    semaphore=name,
                    attempt=attempt_count,
                    max_attempts=max_attempts,
                    delay=retry_interval,
                )
            await asyncio.sleep(retry_interval)


def _log_exhausted(name: str, attempts: int, elapsed_ms: int) -> None:
    log.warning(
        "permit_exhausted", semaphore=name, attempts=attempts, elapsed_ms=elapsed_ms
    )
