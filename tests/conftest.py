"""Pytest configuration and fixtures for passbuddy tests."""

from __future__ import annotations

import os
import time
from collections.abc import AsyncGenerator, Generator
from typing import TYPE_CHECKING

import pytest

from tests.fakes import FakeAIOStore, FakeStore

if TYPE_CHECKING:
    from redis import Redis
    from redis.asyncio import Redis as AIORedis


def is_docker_available() -> bool:
    """Check if Docker is available."""
    import shutil
    import subprocess

    if not shutil.which("docker"):
        return False
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


# Point the integration tests at an existing server instead of Docker.
EXTERNAL_REDIS_URL = os.environ.get("PASSBUDDY_TEST_REDIS_URL")

# Skip integration tests if neither is available
requires_docker = pytest.mark.skipif(
    not EXTERNAL_REDIS_URL and not is_docker_available(),
    reason="Docker is not available",
)


@pytest.fixture(scope="session")
def redis_port() -> int:
    """Return the host port the test Redis is published on."""
    return 6399  # Use non-standard port to avoid conflicts


@pytest.fixture(scope="session")
def docker_redis(
    tmp_path_factory: pytest.TempPathFactory, redis_port: int
) -> Generator[str, None, None]:
    """Start Redis 7 in Docker for integration tests.

    Redis 7 replicates script effects, which the server clock strategy
    relies on. Returns the Redis URL.
    """
    import subprocess

    if EXTERNAL_REDIS_URL:
        _wait_for_redis(EXTERNAL_REDIS_URL)
        yield EXTERNAL_REDIS_URL
        return

    compose_file = tmp_path_factory.mktemp("redis") / "docker-compose.yml"
    compose_file.write_text(
        f"""
services:
  redis:
    image: redis:7-alpine
    ports:
      - "{redis_port}:6379"
    healthcheck:
      test: ["CMD", "redis-cli", "ping"]
      interval: 1s
      timeout: 3s
      retries: 30
"""
    )
    compose = ["docker", "compose", "-p", "passbuddy-tests", "-f", str(compose_file)]

    subprocess.run([*compose, "up", "-d", "--wait"], check=True, capture_output=True)

    redis_url = f"redis://localhost:{redis_port}/0"
    _wait_for_redis(redis_url)

    yield redis_url

    subprocess.run([*compose, "down", "-v"], capture_output=True)


def _wait_for_redis(url: str, timeout: float = 30) -> None:
    """Wait for Redis to be ready."""
    from redis import Redis
    from redis.exceptions import ConnectionError

    start = time.time()
    while time.time() - start < timeout:
        try:
            r = Redis.from_url(url)
            r.ping()
            r.close()
            return
        except ConnectionError:
            time.sleep(0.5)
    raise TimeoutError(f"Redis at {url} did not become ready in {timeout}s")


@pytest.fixture
def redis_client(docker_redis: str) -> Generator[Redis, None, None]:
    """Create a Redis client connected to Docker Redis."""
    from redis import Redis

    client = Redis.from_url(docker_redis)
    # Cleanup before test to ensure isolation
    client.flushdb()
    yield client
    # Cleanup all keys after each test
    try:
        client.flushdb()
    except Exception:
        pass  # Ignore errors during cleanup
    client.close()


@pytest.fixture
async def aioredis_client(docker_redis: str) -> AsyncGenerator[AIORedis, None]:
    """Create an async Redis client connected to Docker Redis."""
    from redis.asyncio import Redis as AIORedis

    client = AIORedis.from_url(docker_redis)
    # Cleanup before test to ensure isolation
    await client.flushdb()
    yield client
    # Cleanup all keys after each test
    try:
        await client.flushdb()
    except Exception:
        pass  # Ignore errors during cleanup
    await client.aclose()


@pytest.fixture
def unique_name() -> Generator[str, None, None]:
    """Generate a unique semaphore name for each test."""
    import uuid

    yield f"test-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def fake_store() -> FakeStore:
    """In-memory store shared by every semaphore built in one test."""
    return FakeStore()


@pytest.fixture
def fake_aio_store(fake_store: FakeStore) -> FakeAIOStore:
    """Async view of :func:`fake_store`."""
    return FakeAIOStore(fake_store)
