"""
Locks used to serialize saga work.

- KeyedLock: one asyncio.Lock per key (order id, transaction id) inside a process
- RedlockTickLock: Redis lock so only one instance runs a scheduler tick
- LocalTickLock: single-process stand-in for RedlockTickLock
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Protocol

import structlog
from redlock import Redlock

logger = structlog.get_logger(__name__)


class KeyedLock:
    """Per-key mutual exclusion; idle keys are dropped."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class TickLock(Protocol):
    def hold(self, name: str) -> "AsyncIterator[bool]":
        """Async context manager yielding True when this process owns the lock."""
        ...


class LocalTickLock:
    """Non-blocking in-process tick lock."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            yield False
            return
        async with lock:
            yield True


class RedlockTickLock:
    """
    Distributed tick lock backed by Redlock.

    The lock expires after ``ttl_ms`` even if its holder dies, so the TTL
    must stay below the tick interval and above the expected tick duration.
    """

    def __init__(
        self,
        redis_urls: List[str],
        ttl_ms: int,
        redlock: Optional[Redlock] = None,
    ):
        self.redis_urls = redis_urls
        self.ttl_ms = ttl_ms
        self._redlock = redlock

    def _get_redlock(self) -> Redlock:
        if self._redlock is None:
            self._redlock = Redlock(self.redis_urls, retry_count=1)
        return self._redlock

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        redlock = self._get_redlock()
        lock = await asyncio.to_thread(redlock.lock, name, self.ttl_ms)
        if not lock:
            logger.debug("tick_lock_not_acquired", lock_name=name)
            yield False
            return

        try:
            yield True
        finally:
            try:
                await asyncio.to_thread(redlock.unlock, lock)
            except Exception as e:
                # Expires on its own after ttl_ms
                logger.warning("tick_lock_release_failed", lock_name=name, error=str(e))
