"""Server-side acquisition script.

The script runs atomically inside Redis, so the sweep, the upsert, the
capacity check and the rollback can never interleave with another
participant's acquisition. Every value is passed through KEYS/ARGV; nothing
is formatted into the script text.
"""

from __future__ import annotations

from typing import Any, NamedTuple

from .exceptions import StoreScriptError

# KEYS[1] = semaphore key (sorted set, member -> expiry in ms)
# ARGV[1] = member id, ARGV[2] = capacity, ARGV[3] = ttl in ms,
# ARGV[4] = now in ms, or "" to read the Redis server clock
ACQUIRE_PERMIT_LUA = """
local key = KEYS[1]
local member = ARGV[1]
local capacity = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local now
if ARGV[4] == "" then
    local t = redis.call("TIME")
    now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
else
    now = tonumber(ARGV[4])
end

redis.call("ZREMRANGEBYSCORE", key, "-inf", now)

local expiry = now + ttl
redis.call("ZADD", key, expiry, member)

if redis.call("ZCARD", key) > capacity then
    redis.call("ZREM", key, member)
    return {0, 0, now}
end

-- drop the whole key once its latest record has expired
local latest = redis.call("ZRANGE", key, -1, -1, "WITHSCORES")
redis.call("PEXPIRE", key, math.max(tonumber(latest[2]) - now, ttl))

return {1, expiry, now}
"""


class AcquireResult(NamedTuple):
    """Decoded reply of the acquisition script."""

    acquired: bool
    expiry: int
    now: int

    @property
    def remaining_ms(self) -> int:
        """Validity left on the granted permit, measured on the store's clock."""
        if not self.acquired:
            return 0
        return max(self.expiry - self.now, 0)


def acquire_args(
    member: str, capacity: int, ttl_ms: int, now_ms: int | None
) -> list[Any]:
    """Build ARGV for :data:`ACQUIRE_PERMIT_LUA`.

    ``now_ms=None`` selects the server clock.
    """
    return [member, capacity, ttl_ms, "" if now_ms is None else now_ms]


def parse_acquire_reply(reply: Any, name: str) -> AcquireResult:
    """Decode the ``{acquired, expiry, now}`` array returned by the script.

    Raises:
        StoreScriptError: If the reply does not have that shape
    """
    try:
        acquired, expiry, now = (int(value) for value in reply)
    except (TypeError, ValueError):
        raise StoreScriptError(
            "acquire", name, f"unexpected script reply {reply!r}"
        ) from None
    if acquired not in (0, 1):
        raise StoreScriptError("acquire", name, f"unexpected script reply {reply!r}")
    return AcquireResult(acquired == 1, expiry, now)
