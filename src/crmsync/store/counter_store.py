"""Shared counter store with TTL semantics.

All cross-process state of the engine (daily token usage, circuit failure
counters and open markers, cached health verdicts and pending webhook
groups) lives behind ``CounterStore``. Operations that read and write a
value in one step (``increment``, ``append``, ``delete``) are atomic so
concurrent workers never lose updates.
"""

import copy
import json
import math
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis


class Clock(Protocol):
    """Clock interface for testable time management."""

    def now(self) -> float:
        """Return current time in seconds."""
        ...


class MonotonicClock:
    """Default clock implementation using time.monotonic."""

    def now(self) -> float:
        """Return current monotonic time in seconds."""
        return time.monotonic()


class CounterStore(Protocol):
    """Async key/value store with expiry used for shared counters."""

    async def get(self, key: str, default: Any = None) -> Any:
        ...

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically add ``amount`` and return the new value; ``ttl`` refreshes the expiry."""
        ...

    async def append(self, key: str, value: Any, ttl: Optional[float] = None) -> List[Any]:
        """Atomically append to a list and return its full contents."""
        ...

    async def get_list(self, key: str) -> List[Any]:
        ...

    async def delete(self, key: str) -> bool:
        """Delete a key; True only for the caller that actually removed it."""
        ...

    async def exists(self, key: str) -> bool:
        ...


class InMemoryCounterStore:
    """
    Process-local counter store.

    Values are guarded by a threading.Lock so the store can be shared between
    the event loop and worker threads. Expiry is evaluated lazily on access
    against the injected clock.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or MonotonicClock()
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _expires_at(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self.clock.now() + ttl

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self.clock.now() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live(key)
            return default if entry is None else copy.deepcopy(entry[0])

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expires_at(ttl))

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        with self._lock:
            entry = self._live(key)
            current, expires_at = entry if entry is not None else (0, None)
            value = int(current) + amount
            if ttl is not None:
                expires_at = self._expires_at(ttl)
            self._data[key] = (value, expires_at)
            return value

    async def append(self, key: str, value: Any, ttl: Optional[float] = None) -> List[Any]:
        with self._lock:
            entry = self._live(key)
            items, expires_at = entry if entry is not None else ([], None)
            items = list(items) + [copy.deepcopy(value)]
            if ttl is not None:
                expires_at = self._expires_at(ttl)
            self._data[key] = (items, expires_at)
            return copy.deepcopy(items)

    async def get_list(self, key: str) -> List[Any]:
        with self._lock:
            entry = self._live(key)
            return [] if entry is None else copy.deepcopy(list(entry[0]))

    async def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, or None for missing or persistent keys."""
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self.clock.now())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


def _seconds(ttl: Optional[float]) -> Optional[int]:
    return None if ttl is None else max(1, math.ceil(ttl))


class RedisCounterStore:
    """
    Counter store backed by Redis.

    Scalar values are stored JSON-encoded so integers stay compatible with
    INCRBY. Lists use RPUSH so concurrent appends are never lost.
    """

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self._redis.get(key)
        return default if raw is None else json.loads(raw)

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self._redis.set(key, json.dumps(value), ex=_seconds(ttl))

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incrby(key, amount)
            if ttl is not None:
                pipe.expire(key, _seconds(ttl))
            results = await pipe.execute()
        return int(results[0])

    async def append(self, key: str, value: Any, ttl: Optional[float] = None) -> List[Any]:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps(value))
            if ttl is not None:
                pipe.expire(key, _seconds(ttl))
            pipe.lrange(key, 0, -1)
            results = await pipe.execute()
        return [json.loads(item) for item in results[-1]]

    async def get_list(self, key: str) -> List[Any]:
        return [json.loads(item) for item in await self._redis.lrange(key, 0, -1)]

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._redis.ttl(key)
        return None if remaining is None or remaining < 0 else float(remaining)

    async def close(self) -> None:
        await self._redis.aclose()
