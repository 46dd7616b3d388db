"""Fixed-window counter stores shared by the rate limiter and delay governor."""

from __future__ import annotations

import abc
import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class WindowState:
    """Counter value after a hit, and seconds until the window resets."""

    count: int
    reset_after: float


class RateLimitStore(abc.ABC):
    """Atomic increment-and-read of per-key fixed windows."""

    @abc.abstractmethod
    async def hit(self, key: str, window_seconds: float) -> WindowState:
        """Count one request against ``key`` and return the window state.

        Starts a fresh window when none exists or the previous one elapsed.
        """
        ...

    @abc.abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the window for ``key``."""
        ...


@dataclass
class _Window:
    count: int
    window_start: float


class MemoryRateLimitStore(RateLimitStore):
    """In-process store. Counts are lost on restart.

    Each key has its own asyncio.Lock so concurrent bursts from one client
    cannot undercount; different keys never contend.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def hit(self, key: str, window_seconds: float) -> WindowState:
        async with self._lock_for(key):
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now - window.window_start >= window_seconds:
                window = self._windows[key] = _Window(count=0, window_start=now)
            window.count += 1
            return WindowState(
                count=window.count,
                reset_after=max(0.0, window.window_start + window_seconds - now),
            )

    async def reset(self, key: str) -> None:
        async with self._lock_for(key):
            self._windows.pop(key, None)

    def prune(self, max_window_seconds: float) -> int:
        """Drop windows older than ``max_window_seconds``. Returns the number removed."""
        now = self._clock()
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.window_start >= max_window_seconds
        ]
        for key in expired:
            self._windows.pop(key, None)
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                self._locks.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


# Atomic Lua script: increment, start the expiry on first hit, report TTL.
# Returns [count, ttl_ms]
_FIXED_WINDOW_LUA = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
    redis.call('PEXPIRE', key, window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
    redis.call('PEXPIRE', key, window_ms)
    ttl = window_ms
end

return {count, ttl}
"""


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed store so several gateway processes share one window."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "shopguard") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def hit(self, key: str, window_seconds: float) -> WindowState:
        result = await self._redis.eval(
            _FIXED_WINDOW_LUA,
            1,  # number of keys
            self._key(key),
            str(int(window_seconds * 1000)),
        )
        return WindowState(count=int(result[0]), reset_after=int(result[1]) / 1000)

    async def reset(self, key: str) -> None:
        await self._redis.delete(self._key(key))
