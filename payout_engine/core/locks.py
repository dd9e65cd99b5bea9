"""
Per-key mutual exclusion for payout initiation.

- LocalKeyedLock: asyncio locks, one process
- RedisKeyedLock: Redlock across processes
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

import structlog
from redlock import Redlock

from payout_engine.config import Settings, get_settings
from payout_engine.core.exceptions import LockUnavailableError

logger = structlog.get_logger(__name__)


class KeyedLock(Protocol):
    def hold(self, key: str) -> AsyncContextManager[None]: ...


class LocalKeyedLock:
    """
    In-process keyed lock.

    Entries are dropped once no task holds or waits for a key, so the map
    does not grow with every key ever seen.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock:
    """
    Distributed keyed lock using Redlock.

    redlock-py is synchronous, so acquire/release run in a worker thread.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        redlock: Optional[Redlock] = None,
    ):
        settings = get_settings()
        self.ttl_ms = (ttl_seconds or settings.lock_timeout_seconds) * 1000
        self.redlock = redlock or Redlock([redis_url or settings.redis_url])

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        resource = f"payout:lock:{key}"
        lock = await asyncio.to_thread(self.redlock.lock, resource, self.ttl_ms)
        if not lock:
            logger.warning("payout_lock_acquisition_failed", lock_key=resource)
            raise LockUnavailableError(
                "Failed to acquire lock - payout already in progress", lock_key=resource
            )

        logger.debug("payout_lock_acquired", lock_key=resource)
        try:
            yield
        finally:
            await asyncio.to_thread(self.redlock.unlock, lock)


def build_lock(settings: Optional[Settings] = None) -> KeyedLock:
    """Lock backend selected by the lock_backend setting."""
    settings = settings or get_settings()
    if settings.lock_backend == "redis":
        return RedisKeyedLock(settings.redis_url, settings.lock_timeout_seconds)
    return LocalKeyedLock()
