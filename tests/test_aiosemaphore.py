"""Unit tests for the async AIOSemaphore class."""

from __future__ import annotations

import asyncio
import time
from unittest import mock

import pytest
from redis.exceptions import ConnectionError

from passbuddy import (
    AIOSemaphore,
    CapacityExceeded,
    Semaphore,
    StoreConnectionError,
    StoreScriptError,
)
from tests.fakes import FakeAIOStore


def make_semaphore(store: FakeAIOStore, **options) -> AIOSemaphore:
    options.setdefault("name", "testlock")
    options.setdefault("max_attempts", 0)
    options.setdefault("retry_interval", 0.01)
    return AIOSemaphore(store=store, **options)


class TestAIOSemaphoreAcquireRelease:
    """Tests for async acquire and release operations."""

    async def test_acquire_and_release(self, fake_aio_store: FakeAIOStore) -> None:
        """Test basic async acquire and release."""
        sem = make_semaphore(fake_aio_store)

        expiry = await sem.acquire()
        assert sem.held
        assert sem.expires_at == expiry
        assert fake_aio_store.store.members(sem.key) == {sem.identity: expiry}

        await sem.release()
        assert not sem.held
        assert fake_aio_store.store.members(sem.key) == {}

    async def test_release_twice(self, fake_aio_store: FakeAIOStore) -> None:
        sem = make_semaphore(fake_aio_store)
        await sem.acquire()
        await sem.release()
        await sem.release()
        assert not sem.held

    async def test_capacity_then_release(self, fake_aio_store: FakeAIOStore) -> None:
        """Test A acquires, B is refused, A releases, B succeeds."""
        a = make_semaphore(fake_aio_store, capacity=1)
        b = make_semaphore(fake_aio_store, capacity=1)

        await a.acquire()
        with pytest.raises(CapacityExceeded):
            await b.acquire()

        await a.release()
        await b.acquire()
        assert list(fake_aio_store.store.members(b.key)) == [b.identity]

    async def test_store_error_not_retried(self, fake_aio_store: FakeAIOStore) -> None:
        sem = make_semaphore(fake_aio_store, max_attempts=3)
        fake_aio_store.store.fail_with = ConnectionError("refused")

        with pytest.raises(StoreConnectionError):
            await sem.acquire()

        assert fake_aio_store.store.script_calls == 1

    async def test_shares_pool_with_sync_semaphore(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        """Test that sync and async participants count against one pool."""
        sync_sem = Semaphore(name="testlock", capacity=1, max_attempts=0,
                             store=fake_aio_store.store)
        async_sem = make_semaphore(fake_aio_store, capacity=1)

        sync_sem.acquire()
        with pytest.raises(CapacityExceeded):
            await async_sem.acquire()


class TestAIOSemaphoreRetry:
    """Tests for async retry behaviour."""

    async def test_retry_attempts_and_timing(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        """Test that a saturated pool costs max_attempts + 1 attempts."""
        await make_semaphore(fake_aio_store, capacity=1, ttl=10.0).acquire()
        sem = make_semaphore(
            fake_aio_store, capacity=1, max_attempts=3, retry_interval=0.1
        )
        calls_before = fake_aio_store.store.script_calls

        start = time.monotonic()
        with pytest.raises(CapacityExceeded) as excinfo:
            await sem.acquire()
        elapsed = time.monotonic() - start

        assert fake_aio_store.store.script_calls - calls_before == 4
        assert excinfo.value.attempts == 4
        assert 0.3 <= elapsed < 1.0

    async def test_waiting_does_not_block_loop(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        """Test that other tasks keep running while acquire() waits."""
        await make_semaphore(fake_aio_store, capacity=1, ttl=10.0).acquire()
        sem = make_semaphore(
            fake_aio_store, capacity=1, max_attempts=4, retry_interval=0.05
        )
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        try:
            with pytest.raises(CapacityExceeded):
                await sem.acquire()
        finally:
            task.cancel()

        assert ticks >= 10

    async def test_retry_wins_after_holder_expires(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        await make_semaphore(fake_aio_store, capacity=1, ttl=0.05).acquire()
        sem = make_semaphore(
            fake_aio_store, capacity=1, max_attempts=5, retry_interval=0.03
        )

        await sem.acquire()

        assert sem.held


class TestAIOSemaphoreUseAndBind:
    """Tests for use(), bind() and the async context manager."""

    async def test_use_skips_store_while_held(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        sem = make_semaphore(fake_aio_store)
        await sem.use()
        await sem.use()
        assert fake_aio_store.store.script_calls == 1

    async def test_bind_releases_and_reraises(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        """Test that the wrapped coroutine's error propagates unchanged."""
        sem = make_semaphore(fake_aio_store)
        error = KeyError("missing")

        async def fail() -> None:
            raise error

        bound = sem.bind(fail, release_on_complete=True)

        with pytest.raises(KeyError) as excinfo:
            await bound()

        assert excinfo.value is error
        assert not sem.held
        assert fake_aio_store.store.members(sem.key) == {}

    async def test_bind_without_release(self, fake_aio_store: FakeAIOStore) -> None:
        sem = make_semaphore(fake_aio_store)

        async def double(value: int) -> int:
            return value * 2

        bound = sem.bind(double)

        assert await bound(4) == 8
        assert await bound(5) == 10
        assert sem.held
        assert fake_aio_store.store.script_calls == 1

    async def test_async_context_manager(self, fake_aio_store: FakeAIOStore) -> None:
        """Test using semaphore as async context manager."""
        sem = make_semaphore(fake_aio_store)

        async with sem as entered:
            assert entered is sem
            assert sem.held

        assert not sem.held
        assert fake_aio_store.store.members(sem.key) == {}

    async def test_aclose_closes_store(self, fake_aio_store: FakeAIOStore) -> None:
        await make_semaphore(fake_aio_store).aclose()
        assert fake_aio_store.store.closed


class TestAIOSemaphoreFailureIsolation:
    """Malformed replies and failed releases stay inside the error taxonomy."""

    async def test_malformed_reply_is_store_error(self) -> None:
        store = mock.Mock()
        store.execute_script = mock.AsyncMock(return_value=None)
        sem = AIOSemaphore(name="testlock", max_attempts=3, store=store)

        with pytest.raises(StoreScriptError) as excinfo:
            await sem.acquire()

        assert excinfo.value.operation == "acquire"
        assert store.execute_script.await_count == 1

    async def test_bind_keeps_action_error_when_release_fails(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        sem = make_semaphore(fake_aio_store)
        error = LookupError("missing")

        async def fail() -> None:
            fake_aio_store.store.fail_with = ConnectionError("store went away")
            raise error

        with pytest.raises(LookupError) as excinfo:
            await sem.bind(fail, release_on_complete=True)()

        assert excinfo.value is error
        assert fake_aio_store.store.remove_calls == 1

    async def test_context_manager_keeps_body_error(
        self, fake_aio_store: FakeAIOStore
    ) -> None:
        sem = make_semaphore(fake_aio_store)

        with pytest.raises(ValueError, match="body"):
            async with sem:
                fake_aio_store.store.fail_with = ConnectionError("store went away")
                raise ValueError("body")
