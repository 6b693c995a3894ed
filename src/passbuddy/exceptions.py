"""Exceptions for passbuddy."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class ConfigurationError(SemaphoreError, ValueError):
    """Raised when a semaphore is constructed with invalid options.

    Subclasses ValueError so callers validating plain arguments can keep
    catching the builtin.
    """

    def __init__(self, option: str, value: object, reason: str) -> None:
        self.option = option
        self.value = value
        super().__init__(f"Invalid {option}={value!r}: {reason}")


class CapacityExceeded(SemaphoreError):
    """Raised when the permit pool stayed full for every attempt."""

    def __init__(self, name: str, capacity: int, attempts: int = 1) -> None:
        self.name = name
        self.capacity = capacity
        self.attempts = attempts
        super().__init__(
            f"Semaphore '{name}' is at capacity ({capacity}) "
            f"after {attempts} attempt(s)"
        )


class StoreError(SemaphoreError):
    """Raised when talking to the shared store fails.

    The original redis-py exception is chained as ``__cause__``.
    """

    def __init__(self, operation: str, name: str, detail: str = "") -> None:
        self.operation = operation
        self.name = name
        message = f"Store failure during {operation} of semaphore '{name}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StoreConnectionError(StoreError):
    """The store could not be reached (connection refused, timeout, ...)."""


class StoreScriptError(StoreError):
    """The store answered, but rejected the command or script."""
