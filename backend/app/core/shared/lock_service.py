"""
Keyed locking for folder creation.

Folder resolution is a check-then-act sequence against a remote provider
that has no "create if not exists" primitive. Two resolutions of the same
(class, subject) pair racing after a mapping miss could each create a
folder. The lock services here serialize those sequences per key:

- LocalLockService: asyncio locks, one per key, for a single process.
- RedisLockService: Redis SET NX PX locks for several workers sharing a
  database. Locks expire automatically so a crashed worker cannot wedge
  a key.

Usage:
    from app.core.shared.lock_service import get_lock_service

    async with get_lock_service().lock("folder:6:12") as acquired:
        if acquired:
            ...
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger("hoclieu.locks")


class LocalLockService:
    """
    In-process keyed locks.

    Keys are created on demand and dropped again once nobody holds or waits
    on them, so the table does not grow with every taxonomy pair ever seen.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, resource_name: str, timeout: int = 60) -> AsyncIterator[bool]:
        """
        Hold the lock for ``resource_name`` for the duration of the block.

        Waits up to ``timeout`` seconds; yields False if the wait timed out
        so the caller can decide whether to proceed unserialized.
        """
        lock = self._locks.setdefault(resource_name, asyncio.Lock())
        self._waiters[resource_name] = self._waiters.get(resource_name, 0) + 1
        acquired = False
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
                acquired = True
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for lock: {resource_name}")
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._waiters[resource_name] -= 1
            if self._waiters[resource_name] == 0:
                self._waiters.pop(resource_name, None)
                self._locks.pop(resource_name, None)

    def is_locked(self, resource_name: str) -> bool:
        lock = self._locks.get(resource_name)
        return bool(lock and lock.locked())


class RedisLockService:
    """
    Distributed locking service using Redis.

    Lock Key Format:
        hoclieu:lock:{resource_name}

    Lock Value Format:
        {lock_id}:{acquired_at}
    """

    _RELEASE_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if current and string.find(current, ARGV[1], 1, true) == 1 then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self._redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = client
        self._owns_client = client is None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock_prefix = "hoclieu:lock:"

    async def _get_redis(self) -> redis.Redis:
        """Get or create the Redis connection for the running event loop."""
        if not self._owns_client:
            return self._redis
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            self._redis_loop = loop
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def acquire_lock(
        self,
        resource_name: str,
        timeout: int = 60,
        retry_interval: float = 0.2,
        max_retries: int = 0,
    ) -> Optional[str]:
        """
        Attempt to acquire a lock with SET NX PX.

        Args:
            resource_name: Name of the resource to lock
            timeout: Lock expiration in seconds
            retry_interval: Seconds between retry attempts
            max_retries: Maximum retry attempts (0 = single attempt)

        Returns:
            Lock ID string if acquired, None if the lock is held elsewhere
        """
        r = await self._get_redis()
        lock_key = f"{self._lock_prefix}{resource_name}"
        lock_id = str(uuid.uuid4())
        lock_value = f"{lock_id}:{datetime.utcnow().isoformat()}"

        attempts = 0
        while True:
            acquired = await r.set(lock_key, lock_value, nx=True, px=timeout * 1000)
            if acquired:
                logger.debug(f"Lock acquired: {resource_name} (id={lock_id[:8]}..., timeout={timeout}s)")
                return lock_id

            attempts += 1
            if attempts > max_retries:
                logger.debug(f"Lock not available: {resource_name} (attempts={attempts})")
                return None

            await asyncio.sleep(retry_interval)

    async def release_lock(self, resource_name: str, lock_id: str) -> bool:
        """Release the lock only if ``lock_id`` still owns it."""
        r = await self._get_redis()
        lock_key = f"{self._lock_prefix}{resource_name}"
        result = await r.eval(self._RELEASE_SCRIPT, 1, lock_key, lock_id)
        released = result == 1
        if not released:
            logger.debug(f"Lock not released (not held or expired): {resource_name}")
        return released

    @asynccontextmanager
    async def lock(self, resource_name: str, timeout: int = 60) -> AsyncIterator[bool]:
        """
        Context manager that waits for the lock for up to ``timeout`` seconds.

        Yields True if the lock was acquired, False otherwise.
        """
        retry_interval = 0.2
        lock_id = await self.acquire_lock(
            resource_name,
            timeout=timeout,
            retry_interval=retry_interval,
            max_retries=int(timeout / retry_interval),
        )
        try:
            yield lock_id is not None
        finally:
            if lock_id:
                await self.release_lock(resource_name, lock_id)

    async def close(self):
        """Close Redis connection."""
        if self._redis and self._owns_client:
            await self._redis.close()
            self._redis = None
            self._redis_loop = None


@lru_cache()
def get_lock_service():
    """Process-wide lock service selected by FOLDER_LOCK_BACKEND."""
    if settings.folder_lock_backend == "redis":
        logger.info("Using Redis locks for folder creation")
        return RedisLockService()
    return LocalLockService()
