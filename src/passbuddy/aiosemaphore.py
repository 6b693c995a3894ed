"""Async distributed counting semaphore backed by a Redis sorted set.

Same storage format and script as :mod:`passbuddy.semaphore`, so sync and
async participants can share one pool.
"""

from __future__ import annotations

import functools
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from .config import (
    DEFAULT_NAME,
    DEFAULT_PREFIX,
    ClockStrategy,
    SemaphoreConfig,
    StoreConnection,
)
from .exceptions import CapacityExceeded, StoreError
from .hooks import AIOLifecycleHook
from .retry import aretry
from .scripts import (
    ACQUIRE_PERMIT_LUA,
    AcquireResult,
    acquire_args,
    parse_acquire_reply,
)
from .store import AIORedisStore, AIOStoreAdapter, translate_errors

if TYPE_CHECKING:
    from types import TracebackType

log = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class AIOSemaphore:
    """Async distributed Redis-powered counting semaphore.

    Usage:
        >>> import asyncio
        >>> from redis.asyncio import Redis
        >>> from passbuddy import Connected
        >>> async def main():
        ...     sem = AIOSemaphore(name='my-resource', capacity=3,
        ...                        connection=Connected(Redis()))
        ...     async with sem:
        ...         # At most 3 participants get here at once
        ...         pass
        >>> asyncio.run(main())

    Takes the same arguments as :class:`passbuddy.Semaphore`; ``store`` must
    be an async adapter.
    """

    def __init__(
        self,
        *,
        prefix: str = DEFAULT_PREFIX,
        name: str = DEFAULT_NAME,
        capacity: int = 10,
        ttl: float = 5.0,
        max_attempts: int = 5,
        retry_interval: float = 0.5,
        clock: ClockStrategy | str = ClockStrategy.LOCAL,
        connection: StoreConnection | None = None,
        store: AIOStoreAdapter | None = None,
        config: SemaphoreConfig | None = None,
    ) -> None:
        if config is None:
            config = SemaphoreConfig(
                prefix=prefix,
                name=name,
                capacity=capacity,
                ttl=ttl,
                max_attempts=max_attempts,
                retry_interval=retry_interval,
                clock=clock,
            )
        self._config = config
        self._store: AIOStoreAdapter = (
            store if store is not None else AIORedisStore(connection)
        )
        self._identity = uuid.uuid4().hex
        self._held_until = 0.0
        self._expires_at = 0

    @property
    def config(self) -> SemaphoreConfig:
        return self._config

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def key(self) -> str:
        return self._config.key

    @property
    def expires_at(self) -> int:
        return self._expires_at

    @property
    def held(self) -> bool:
        """Return True if the local deadline of our permit is in the future."""
        return self._held_until > time.monotonic()

    @property
    def remaining(self) -> float:
        return max(self._held_until - time.monotonic(), 0.0)

    async def acquire(self, attempt_count: int = 0) -> int:
        """Acquire or renew this participant's permit.

        Waiting between attempts yields to the event loop.

        Returns:
            The store-side expiry of the granted permit in ms

        Raises:
            CapacityExceeded: If the pool stayed full for every attempt
            StoreError: If Redis could not run the script; never retried
        """
        return await aretry(
            self._try_acquire,
            max_attempts=self._config.max_attempts,
            retry_interval=self._config.retry_interval,
            name=self._config.name,
            attempt_count=attempt_count,
        )

    async def _try_acquire(self) -> int:
        started = time.monotonic()
        now_ms = None
        if self._config.clock is ClockStrategy.LOCAL:
            now_ms = int(time.time() * 1000)
        args = acquire_args(
            self._identity, self._config.capacity, self._config.ttl_ms, now_ms
        )
        with translate_errors("acquire", self._config.name):
            reply = await self._store.execute_script(
                ACQUIRE_PERMIT_LUA, [self.key], args
            )
        result = parse_acquire_reply(reply, self._config.name)
        return self._apply(result, started)

    def _apply(self, result: AcquireResult, started: float) -> int:
        if not result.acquired:
            self._held_until = 0.0
            self._expires_at = 0
            log.debug("permit_denied", semaphore=self._config.name, key=self.key)
            raise CapacityExceeded(self._config.name, self._config.capacity)
        # Anchored before the round trip: never outlives the store deadline
        self._held_until = started + result.remaining_ms / 1000
        self._expires_at = result.expiry
        log.debug(
            "permit_acquired",
            semaphore=self._config.name,
            member=self._identity,
            expiry=result.expiry,
        )
        return result.expiry

    async def release(self) -> None:
        """Remove this participant's permit; a no-op if it is already gone."""
        self._held_until = 0.0
        self._expires_at = 0
        with translate_errors("release", self._config.name):
            removed = await self._store.remove_member(self.key, self._identity)
        log.debug(
            "permit_released",
            semaphore=self._config.name,
            member=self._identity,
            removed=removed,
        )

    async def _release_after_failure(self) -> None:
        """Release while another exception propagates, without replacing it."""
        try:
            await self.release()
        except StoreError as exc:
            log.warning(
                "permit_release_failed", semaphore=self._config.name, error=str(exc)
            )

    async def use(self) -> None:
        """Make sure a permit is held, acquiring only when the local one lapsed."""
        if self.held:
            return
        await self.acquire()

    def bind(self, func: F, release_on_complete: bool = False) -> F:
        """Wrap the coroutine function ``func`` so each call holds a permit.

        With ``release_on_complete`` the permit is released after every call,
        whether ``func`` returned or raised.
        """

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            await self.use()
            if not release_on_complete:
                return await func(*args, **kwargs)
            try:
                result = await func(*args, **kwargs)
            except BaseException:
                await self._release_after_failure()
                raise
            await self.release()
            return result

        return wrapper  # type: ignore[return-value]

    def handler(
        self, *, acquire_on_start: bool = True, release_on_end: bool = False
    ) -> AIOLifecycleHook:
        """Return async request lifecycle callbacks bound to this semaphore."""
        return AIOLifecycleHook(
            self, acquire_on_start=acquire_on_start, release_on_end=release_on_end
        )

    async def aclose(self) -> None:
        """Close the store connection if this semaphore created it."""
        await self._store.aclose()

    async def __aenter__(self) -> AIOSemaphore:
        """Enter async context manager, acquiring a permit."""
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit async context manager, releasing the permit."""
        if exc_type is not None:
            await self._release_after_failure()
            return
        await self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self.key!r} "
            f"capacity={self._config.capacity} "
            f"held={self.held}>"
        )
