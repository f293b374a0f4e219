"""
services/cache_service.py

Key/value byte cache with TTL plus in-process single-flight.

Backends:
  MemoryCache  dict guarded by a reader/writer lock; expired entries are
               dropped lazily on read and by a periodic sweep task.
  RedisCache   redis.asyncio client, shared across processes.

A ttl of 0 means the entry never expires.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from retirement_queue.utils.exceptions import CacheError, CacheMiss

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[bytes]]


class Cache(Protocol):
    async def get(self, key: str) -> bytes: ...

    async def put(self, key: str, value: bytes, ttl: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def remember(self, key: str, ttl: float, load: Loader) -> bytes: ...


# ============================================================================
# In-memory backend
# ============================================================================

class RWLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryCache:
    def __init__(self, sweep_interval: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._items: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self._lock = RWLock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, key: str) -> bytes:
        with self._lock.read():
            item = self._items.get(key)
        if item is None:
            raise CacheMiss(key)
        value, expires_at = item
        if self._expired(expires_at):
            with self._lock.write():
                current = self._items.get(key)
                if current is not None and self._expired(current[1]):
                    del self._items[key]
            raise CacheMiss(key)
        return value

    async def put(self, key: str, value: bytes, ttl: float) -> None:
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        with self._lock.write():
            self._items[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        with self._lock.write():
            self._items.pop(key, None)

    async def remember(self, key: str, ttl: float, load: Loader) -> bytes:
        try:
            return await self.get(key)
        except CacheMiss:
            pass
        value = await load()
        await self.put(key, value, ttl)
        return value

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock.write():
            expired = [k for k, (_, exp) in self._items.items() if self._expired(exp)]
            for k in expired:
                del self._items[k]
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired entries")

    def start(self) -> None:
        """Start the background sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._items)


# ============================================================================
# Redis backend
# ============================================================================

class RedisCache:
    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self.redis_url = url
        self.redis = client or redis.from_url(url)

    async def get(self, key: str) -> bytes:
        try:
            value = await self.redis.get(key)
        except RedisError as e:
            raise CacheError(f"redis GET {key} failed: {e}") from e
        if value is None:
            raise CacheMiss(key)
        return value

    async def put(self, key: str, value: bytes, ttl: float) -> None:
        try:
            if ttl and ttl > 0:
                await self.redis.set(key, value, px=int(ttl * 1000))
            else:
                await self.redis.set(key, value)
        except RedisError as e:
            raise CacheError(f"redis SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            raise CacheError(f"redis DEL {key} failed: {e}") from e

    async def remember(self, key: str, ttl: float, load: Loader) -> bytes:
        try:
            return await self.get(key)
        except CacheMiss:
            pass
        value = await load()
        await self.put(key, value, ttl)
        return value

    def start(self) -> None:
        """Redis expires keys itself."""

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Disconnected from cache (Redis).")


# ============================================================================
# Single-flight
# ============================================================================

class SingleFlight:
    """
    Coalesces concurrent calls on the same key into one execution.

    The first caller (leader) runs the function; later callers await the
    leader's future. Results, exceptions and cancellation of the leader are
    all shared, and nothing is remembered once the call finishes.
    """

    def __init__(self):
        self._calls: Dict[str, asyncio.Future] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        pending = self._calls.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        fut = asyncio.get_running_loop().create_future()
        self._calls[key] = fut
        try:
            result = await fn()
        except Exception as exc:
            fut.set_exception(exc)
            # Waiters may not exist; keep the loop from reporting it.
            fut.exception()
            raise
        except BaseException:
            fut.cancel()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            if self._calls.get(key) is fut:
                del self._calls[key]


async def remember_json(
    cache: Cache,
    flight: SingleFlight,
    key: str,
    ttl: float,
    load: Callable[[], Awaitable[Any]],
) -> Any:
    """
    Single-flight ``remember`` of a JSON-serialisable value.

    A cached value that fails to decode is deleted before the error is
    raised so the next call reloads it.
    """

    async def load_bytes() -> bytes:
        return json.dumps(await load(), default=str).encode("utf-8")

    raw = await flight.do(key, lambda: cache.remember(key, ttl, load_bytes))
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning(f"Dropping undecodable cache entry {key}: {exc}")
        await cache.delete(key)
        raise CacheError(f"cached value for {key} is not valid JSON") from exc


def build_cache(backend: str, redis_url: str = "", sweep_interval: float = 60.0):
    if backend == "redis":
        return RedisCache(redis_url)
    if backend == "memory":
        return MemoryCache(sweep_interval=sweep_interval)
    raise ValueError(f"Unknown cache backend {backend!r}")
