"""Distributed counting semaphore backed by a Redis sorted set.

Each participant owns one member in the set, scored with its expiry time.
Acquiring (or renewing) runs an atomic script that sweeps expired members,
upserts ours and rolls back if the pool is over capacity. Holders that crash
never need to release: their member simply expires.
"""

from __future__ import annotations

import functools
import time
import uuid
from collections.abc import Callable
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
from .hooks import LifecycleHook
from .retry import retry
from .scripts import (
    ACQUIRE_PERMIT_LUA,
    AcquireResult,
    acquire_args,
    parse_acquire_reply,
)
from .store import RedisStore, StoreAdapter, translate_errors

if TYPE_CHECKING:
    from types import TracebackType

log = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class Semaphore:
    """Distributed Redis-powered counting semaphore with expiring permits.

    Usage:
        >>> from redis import Redis
        >>> from passbuddy import Connected
        >>> sem = Semaphore(name='my-resource', capacity=3,
        ...                 connection=Connected(Redis()))
        >>> sem.acquire()
        >>> try:
        ...     # At most 3 participants get here at once
        ...     pass
        ... finally:
        ...     sem.release()

        >>> # Or keep one permit alive and renew it lazily
        >>> sem.use()

    Args:
        prefix: Key prefix shared by every participant
        name: Semaphore name; ``(prefix, name)`` selects the pool
        capacity: Maximum number of simultaneous holders
        ttl: Seconds a permit stays valid without renewal
        max_attempts: Retries after the first attempt when the pool is full
        retry_interval: Seconds to wait between attempts
        clock: Take "now" from this process (LOCAL) or from Redis (SERVER)
        connection: Connected(client) or ConnectOptions(...) for Redis
        store: A ready store adapter; takes precedence over ``connection``
        config: A complete SemaphoreConfig; takes precedence over the options
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
        store: StoreAdapter | None = None,
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
        self._store: StoreAdapter = store if store is not None else RedisStore(connection)
        self._identity = uuid.uuid4().hex
        self._held_until = 0.0
        self._expires_at = 0

    @property
    def config(self) -> SemaphoreConfig:
        return self._config

    @property
    def identity(self) -> str:
        """Return this participant's member id in the store."""
        return self._identity

    @property
    def key(self) -> str:
        return self._config.key

    @property
    def expires_at(self) -> int:
        """Return the store-side expiry (ms) of the last granted permit, or 0."""
        return self._expires_at

    @property
    def held(self) -> bool:
        """Return True if the local deadline of our permit is in the future.

        This is a best-effort local view. The store may already have swept
        the permit (missed renewal, skewed clocks); call :meth:`acquire` when
        certainty matters.
        """
        return self._held_until > time.monotonic()

    @property
    def remaining(self) -> float:
        """Return seconds left on the local deadline, 0.0 when not held."""
        return max(self._held_until - time.monotonic(), 0.0)

    def acquire(self, attempt_count: int = 0) -> int:
        """Acquire or renew this participant's permit.

        Args:
            attempt_count: Retries already spent (default: 0)

        Returns:
            The store-side expiry of the granted permit in ms

        Raises:
            CapacityExceeded: If the pool stayed full for every attempt
            StoreError: If Redis could not run the script; never retried
        """
        return retry(
            self._try_acquire,
            max_attempts=self._config.max_attempts,
            retry_interval=self._config.retry_interval,
            name=self._config.name,
            attempt_count=attempt_count,
        )

    def _try_acquire(self) -> int:
        """Run the acquisition script once."""
        started = time.monotonic()
        now_ms = None
        if self._config.clock is ClockStrategy.LOCAL:
            now_ms = int(time.time() * 1000)
        args = acquire_args(
            self._identity, self._config.capacity, self._config.ttl_ms, now_ms
        )
        with translate_errors("acquire", self._config.name):
            reply = self._store.execute_script(ACQUIRE_PERMIT_LUA, [self.key], args)
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

    def release(self) -> None:
        """Remove this participant's permit from the store.

        Releasing a permit that is absent or already expired is a no-op.
        Local state is reset even if the store call fails.

        Raises:
            StoreError: If Redis could not be reached
        """
        self._held_until = 0.0
        self._expires_at = 0
        with translate_errors("release", self._config.name):
            removed = self._store.remove_member(self.key, self._identity)
        log.debug(
            "permit_released",
            semaphore=self._config.name,
            member=self._identity,
            removed=removed,
        )

    def _release_after_failure(self) -> None:
        """Release while another exception propagates, without replacing it."""
        try:
            self.release()
        except StoreError as exc:
            log.warning(
                "permit_release_failed", semaphore=self._config.name, error=str(exc)
            )

    def use(self) -> None:
        """Make sure a permit is held, acquiring only when the local one lapsed."""
        if self.held:
            return
        self.acquire()

    def bind(self, func: F, release_on_complete: bool = False) -> F:
        """Wrap ``func`` so each call first makes sure a permit is held.

        With ``release_on_complete`` the permit is released after every call,
        whether ``func`` returned or raised; its exception propagates
        unchanged.
        """

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.use()
            if not release_on_complete:
                return func(*args, **kwargs)
            try:
                result = func(*args, **kwargs)
            except BaseException:
                self._release_after_failure()
                raise
            self.release()
            return result

        return wrapper  # type: ignore[return-value]

    def handler(
        self, *, acquire_on_start: bool = True, release_on_end: bool = False
    ) -> LifecycleHook:
        """Return request lifecycle callbacks bound to this semaphore."""
        return LifecycleHook(
            self, acquire_on_start=acquire_on_start, release_on_end=release_on_end
        )

    def close(self) -> None:
        """Close the store connection if this semaphore created it."""
        self._store.close()

    def __enter__(self) -> Semaphore:
        """Enter context manager, acquiring a permit."""
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager, releasing the permit."""
        if exc_type is not None:
            self._release_after_failure()
            return
        self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self.key!r} "
            f"capacity={self._config.capacity} "
            f"held={self.held}>"
        )
