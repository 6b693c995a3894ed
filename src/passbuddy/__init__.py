"""Distributed counting semaphore with expiring permits, backed by Redis.

Every participant keeps one member in a Redis sorted set, scored with the
time its permit expires. Permits from crashed or stalled holders are swept
by the next acquisition, so nobody has to release on their behalf.

Example usage (sync):

    >>> from redis import Redis
    >>> from passbuddy import Connected, Semaphore
    >>>
    >>> sem = Semaphore(name='my-resource', capacity=3, connection=Connected(Redis()))
    >>>
    >>> with sem:
    ...     # Critical section with limited concurrency (max 3)
    ...     pass

Example usage (async):

    >>> import asyncio
    >>> from redis.asyncio import Redis
    >>> from passbuddy import AIOSemaphore, Connected
    >>>
    >>> async def main():
    ...     sem = AIOSemaphore(name='my-resource', capacity=3,
    ...                        connection=Connected(Redis()))
    ...     send = sem.bind(some_coroutine_function, release_on_complete=True)
    ...     await send()
    >>> asyncio.run(main())
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .aiosemaphore import AIOSemaphore
from .config import ClockStrategy, Connected, ConnectOptions, SemaphoreConfig
from .exceptions import (
    CapacityExceeded,
    ConfigurationError,
    SemaphoreError,
    StoreConnectionError,
    StoreError,
    StoreScriptError,
)
from .hooks import AIOLifecycleHook, LifecycleHook, PermitMiddleware
from .semaphore import Semaphore
from .store import AIORedisStore, RedisStore

__all__: Final[tuple[str, ...]] = (
    "AIOLifecycleHook",
    "AIORedisStore",
    "AIOSemaphore",
    "CapacityExceeded",
    "ClockStrategy",
    "ConfigurationError",
    "ConnectOptions",
    "Connected",
    "LifecycleHook",
    "PermitMiddleware",
    "RedisStore",
    "Semaphore",
    "SemaphoreConfig",
    "SemaphoreError",
    "StoreConnectionError",
    "StoreError",
    "StoreScriptError",
)

try:
    __version__ = version("passbuddy")
except PackageNotFoundError:
    __version__ = "unknown"
