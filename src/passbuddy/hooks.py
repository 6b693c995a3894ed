"""Request lifecycle integration.

A host framework calls ``on_request_start`` before handling a request and
``on_request_finish`` once the response is sent or the connection closes,
whatever the outcome. :class:`PermitMiddleware` wires the async hook into
any ASGI application.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, MutableMapping
from typing import TYPE_CHECKING, Any

import structlog

from .exceptions import CapacityExceeded, StoreError

if TYPE_CHECKING:
    from .aiosemaphore import AIOSemaphore
    from .semaphore import Semaphore

log = structlog.get_logger(__name__)

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class LifecycleHook:
    """Per-request acquire/release callbacks for a sync :class:`Semaphore`."""

    def __init__(
        self,
        semaphore: Semaphore,
        *,
        acquire_on_start: bool = True,
        release_on_end: bool = False,
    ) -> None:
        self.semaphore = semaphore
        self.acquire_on_start = acquire_on_start
        self.release_on_end = release_on_end

    def on_request_start(self) -> None:
        if self.acquire_on_start:
            self.semaphore.acquire()

    def on_request_finish(self) -> None:
        if self.release_on_end:
            self.semaphore.release()


class AIOLifecycleHook:
    """Per-request acquire/release callbacks for an :class:`AIOSemaphore`."""

    def __init__(
        self,
        semaphore: AIOSemaphore,
        *,
        acquire_on_start: bool = True,
        release_on_end: bool = False,
    ) -> None:
        self.semaphore = semaphore
        self.acquire_on_start = acquire_on_start
        self.release_on_end = release_on_end

    async def on_request_start(self) -> None:
        if self.acquire_on_start:
            await self.semaphore.acquire()

    async def on_request_finish(self) -> None:
        if self.release_on_end:
            await self.semaphore.release()


class PermitMiddleware:
    """ASGI middleware that holds a semaphore permit around each request.

    Usage:
        >>> app = PermitMiddleware(app, AIOSemaphore(name='api', capacity=5),
        ...                        release_on_end=True)

    HTTP requests that cannot get a permit are answered with 503; websocket
    connections are closed instead. Lifespan and other scopes pass through.
    """

    def __init__(
        self,
        app: ASGIApp,
        semaphore: AIOSemaphore,
        *,
        acquire_on_start: bool = True,
        release_on_end: bool = False,
    ) -> None:
        self.app = app
        self.hook = semaphore.handler(
            acquire_on_start=acquire_on_start, release_on_end=release_on_end
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        try:
            await self.hook.on_request_start()
        except CapacityExceeded as exc:
            log.info("request_rejected", path=scope.get("path"), semaphore=exc.name)
            await self._reject(scope, send)
            return

        try:
            await self.app(scope, receive, send)
        except BaseException:
            try:
                await self.hook.on_request_finish()
            except StoreError as exc:
                log.warning(
                    "permit_release_failed", path=scope.get("path"), error=str(exc)
                )
            raise
        await self.hook.on_request_finish()

    @staticmethod
    async def _reject(scope: Scope, send: Send) -> None:
        if scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1013})
            return
        body = b"Service Unavailable"
        await send(
            {
                "type": "http.response.start",
                "status": 503,
                "headers": [
                    (b"content-type", b"text/plain; charset=utf-8"),
                    (b"content-length", str(len(body)).encode()),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
