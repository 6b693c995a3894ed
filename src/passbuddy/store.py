"""Shared store adapters over redis-py.

The coordinators only need two capabilities from the store: running an
atomic script and removing one member from a sorted set. The adapters here
provide them for sync and asyncio Redis clients, and own the client's
lifecycle when they created it.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import Connected, ConnectOptions, StoreConnection
from .exceptions import StoreConnectionError, StoreScriptError

if TYPE_CHECKING:
    from redis import Redis
    from redis.asyncio import Redis as AIORedis
    from redis.commands.core import AsyncScript, Script

log = structlog.get_logger(__name__)


class StoreAdapter(Protocol):
    def execute_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any]
    ) -> Any: ...

    def remove_member(self, key: str, member: str) -> int: ...

    def close(self) -> None: ...


class AIOStoreAdapter(Protocol):
    async def execute_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any]
    ) -> Any: ...

    async def remove_member(self, key: str, member: str) -> int: ...

    async def aclose(self) -> None: ...


@contextlib.contextmanager
def translate_errors(operation: str, name: str) -> Iterator[None]:
    """Re-raise redis-py failures as :class:`StoreError` subclasses.

    Connectivity problems become StoreConnectionError; anything the server
    rejected (e.g. a script error) becomes StoreScriptError.
    """
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        log.error("store_error", operation=operation, semaphore=name, error=str(exc))
        raise StoreConnectionError(operation, name, str(exc)) from exc
    except RedisError as exc:
        log.error("store_error", operation=operation, semaphore=name, error=str(exc))
        raise StoreScriptError(operation, name, str(exc)) from exc


def _coerce_connection(connection: StoreConnection | None) -> StoreConnection:
    if connection is None:
        return ConnectOptions()
    if not isinstance(connection, (Connected, ConnectOptions)):
        raise TypeError(
            "connection must be Connected(client) or ConnectOptions(...), "
            f"got {type(connection).__name__}"
        )
    return connection


def _build_client(client_cls: Any, options: ConnectOptions | None) -> Any:
    if options is None:
        raise RuntimeError("no Redis client and no ConnectOptions to create one")
    if options.url:
        client = client_cls.from_url(options.url, **options.params)
    else:
        client = client_cls(**options.params)
    log.info("store_connected", url=options.url)
    return client


class RedisStore:
    """Store adapter for a synchronous ``redis.Redis`` client.

    Usage:
        >>> from redis import Redis
        >>> store = RedisStore(Connected(Redis()))
        >>> store.remove_member('passbuddy-semaphore', 'some-member')
        0

    Args:
        connection: Connected(client) to reuse a client the caller owns, or
            ConnectOptions(...) to have the client created on first use and
            closed by :meth:`close`.
    """

    def __init__(self, connection: StoreConnection | None = None) -> None:
        connection = _coerce_connection(connection)
        self._options: ConnectOptions | None = None
        self._client: Redis | None = None
        self._owned = False
        if isinstance(connection, Connected):
            self._client = connection.client
        else:
            self._options = connection
        self._scripts: dict[str, Script] = {}

    @property
    def client(self) -> Redis:
        """Return the Redis client, creating it on first access."""
        if self._client is None:
            from redis import Redis as RedisClient

            self._client = _build_client(RedisClient, self._options)
            self._owned = True
        return self._client

    def execute_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any]
    ) -> Any:
        """Run ``script`` atomically, registering it once per script text."""
        registered = self._scripts.get(script)
        if registered is None:
            registered = self.client.register_script(script)
            self._scripts[script] = registered
        return registered(keys=list(keys), args=list(args))

    def remove_member(self, key: str, member: str) -> int:
        return self.client.zrem(key, member)

    def close(self) -> None:
        """Close the client if this store created it."""
        if self._owned and self._client is not None:
            self._client.close()
            self._client = None
            self._owned = False
            self._scripts.clear()
            log.info("store_closed")


class AIORedisStore:
    """Store adapter for a ``redis.asyncio.Redis`` client.

    Same contract as :class:`RedisStore`; the client is created lazily on
    the first awaited call so construction never needs a running loop.
    """

    def __init__(self, connection: StoreConnection | None = None) -> None:
        connection = _coerce_connection(connection)
        self._options: ConnectOptions | None = None
        self._client: AIORedis | None = None
        self._owned = False
        if isinstance(connection, Connected):
            self._client = connection.client
        else:
            self._options = connection
        self._scripts: dict[str, AsyncScript] = {}

    @property
    def client(self) -> AIORedis:
        """Return the async Redis client, creating it on first access."""
        if self._client is None:
            from redis.asyncio import Redis as AIORedisClient

            self._client = _build_client(AIORedisClient, self._options)
            self._owned = True
        return self._client

    async def execute_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any]
    ) -> Any:
        registered = self._scripts.get(script)
        if registered is None:
            registered = self.client.register_script(script)
            self._scripts[script] = registered
        return await registered(keys=list(keys), args=list(args))

    async def remove_member(self, key: str, member: str) -> int:
        return await self.client.zrem(key, member)

    async def aclose(self) -> None:
        """Close the client if this store created it."""
        if self._owned and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owned = False
            self._scripts.clear()
            log.info("store_closed")
