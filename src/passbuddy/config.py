"""Semaphore configuration and store-connection options."""

from __future__ import annotations

import enum
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, Optional, Union

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

DEFAULT_PREFIX = "passbuddy"
DEFAULT_NAME = "semaphore"


class ClockStrategy(str, enum.Enum):
    """Where the acquisition script takes "now" from.

    LOCAL trusts the caller's wall clock and assumes the skew between
    instances is small relative to the TTL. SERVER reads the Redis server's
    TIME inside the script, so client skew never matters.
    """

    LOCAL = "local"
    SERVER = "server"


@dataclass(frozen=True)
class SemaphoreConfig:
    """Immutable options of one semaphore participant.

    Durations are in seconds.
    """

    prefix: str = DEFAULT_PREFIX
    name: str = DEFAULT_NAME
    capacity: int = 10
    ttl: float = 5.0
    max_attempts: int = 5
    retry_interval: float = 0.5
    clock: ClockStrategy = ClockStrategy.LOCAL

    def __post_init__(self) -> None:
        if not isinstance(self.prefix, str) or not self.prefix:
            raise ConfigurationError("prefix", self.prefix, "must be a non-empty string")
        if not isinstance(self.name, str) or not self.name:
            raise ConfigurationError("name", self.name, "must be a non-empty string")
        if not _is_int(self.capacity) or self.capacity <= 0:
            raise ConfigurationError("capacity", self.capacity, "must be an integer > 0")
        if not _is_duration(self.ttl) or self.ttl <= 0:
            raise ConfigurationError("ttl", self.ttl, "must be a finite positive duration")
        if int(self.ttl * 1000) < 1:
            raise ConfigurationError("ttl", self.ttl, "must be at least one millisecond")
        if not _is_int(self.max_attempts) or self.max_attempts < 0:
            raise ConfigurationError(
                "max_attempts", self.max_attempts, "must be an integer >= 0"
            )
        if not _is_duration(self.retry_interval) or self.retry_interval < 0:
            raise ConfigurationError(
                "retry_interval", self.retry_interval, "must be a finite duration >= 0"
            )
        try:
            object.__setattr__(self, "clock", ClockStrategy(self.clock))
        except ValueError:
            raise ConfigurationError(
                "clock", self.clock, "must be 'local' or 'server'"
            ) from None

    @property
    def key(self) -> str:
        """Return the Redis key shared by every participant of this semaphore."""
        return f"{self.prefix}-{self.name}"

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl * 1000)

    @classmethod
    def from_env(cls, **overrides: Any) -> SemaphoreConfig:
        """Build a config from ``PASSBUDDY_*`` environment variables.

        Keyword overrides win over the environment; unset variables fall back
        to the documented defaults.
        """
        settings = _load(SemaphoreSettings)
        values = settings.model_dump(exclude_none=True)
        values.update(overrides)
        return cls(**values)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_duration(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


NonEmptyStr = Annotated[str, Field(min_length=1)]
Duration = Annotated[float, Field(ge=0, allow_inf_nan=False)]


class SemaphoreSettings(BaseSettings):
    """Environment overrides for :class:`SemaphoreConfig` (all optional).

    Supported variables: PASSBUDDY_PREFIX, PASSBUDDY_NAME, PASSBUDDY_CAPACITY,
    PASSBUDDY_TTL, PASSBUDDY_MAX_ATTEMPTS, PASSBUDDY_RETRY_INTERVAL,
    PASSBUDDY_CLOCK.
    """

    model_config = SettingsConfigDict(
        env_prefix="PASSBUDDY_",
        extra="ignore",
        case_sensitive=False,
        env_ignore_empty=True,
    )

    prefix: Optional[NonEmptyStr] = None
    name: Optional[NonEmptyStr] = None
    capacity: Optional[Annotated[int, Field(gt=0)]] = None
    ttl: Optional[Annotated[float, Field(gt=0, allow_inf_nan=False)]] = None
    max_attempts: Optional[Annotated[int, Field(ge=0)]] = None
    retry_interval: Optional[Duration] = None
    clock: Optional[ClockStrategy] = None


class RedisSettings(BaseSettings):
    """``REDIS_URL``, or ``REDIS_HOST``/``REDIS_PORT``, as the demo app reads them."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
        case_sensitive=False,
        env_ignore_empty=True,
    )

    url: Optional[str] = None
    host: Optional[str] = None
    port: Optional[Annotated[int, Field(gt=0, lt=65536)]] = None


def _load(settings_cls: type[BaseSettings]) -> Any:
    """Instantiate ``settings_cls`` from the environment, failing as ConfigurationError."""
    try:
        return settings_cls()
    except ValidationError as exc:
        error = exc.errors()[0]
        option = ".".join(str(part) for part in error["loc"]) or settings_cls.__name__
        raise ConfigurationError(option, error.get("input"), error["msg"]) from None


@dataclass(frozen=True)
class Connected:
    """A Redis client the caller already owns; it is never closed for them."""

    client: Any


@dataclass(frozen=True)
class ConnectOptions:
    """Parameters for a Redis client the store creates lazily and owns.

    When ``url`` is set the client is built with ``Redis.from_url``; the
    remaining ``params`` are passed through unmodified either way.
    """

    url: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> ConnectOptions:
        """Read ``REDIS_URL``, or ``REDIS_HOST``/``REDIS_PORT``."""
        settings = _load(RedisSettings)
        if settings.url:
            return cls(url=settings.url)
        return cls(params=settings.model_dump(exclude={"url"}, exclude_none=True))


StoreConnection = Union[Connected, ConnectOptions]
