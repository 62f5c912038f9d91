"""
Per-resource locks that make the availability check and the booking write
one atomic unit.

`LocalLockManager` serializes within a single process; `RedisLockManager`
serializes across workers with SET NX EX.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from .errors import ConflictError
from .redis_service import RedisService

logger = logging.getLogger(__name__)


class LocalLockManager:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        # Holders plus waiters per resource; the lock is dropped when it reaches zero
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, resource: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(resource, asyncio.Lock())
        self._users[resource] = self._users.get(resource, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[resource] -= 1
            if not self._users[resource]:
                del self._users[resource]
                del self._locks[resource]

    @property
    def active_resources(self) -> List[str]:
        return list(self._locks)


class RedisLockManager:
    def __init__(self, redis: RedisService, timeout: int = 30, retry_interval: float = 0.05):
        self.redis = redis
        self.timeout = timeout
        self.retry_interval = retry_interval

    @asynccontextmanager
    async def hold(self, resource: str) -> AsyncIterator[None]:
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while not await self.redis.acquire_lock(resource, token, timeout=self.timeout):
            if loop.time() >= deadline:
                logger.warning(f"Timed out waiting for lock on {resource}")
                raise ConflictError(f"Resource {resource} is busy, try again", {"resource": resource})
            await asyncio.sleep(self.retry_interval)

        try:
            yield
        finally:
            await self.redis.release_lock(resource, token)


def build_lock_manager(backend: str, redis: RedisService, timeout: int = 30):
    if backend == "redis":
        return RedisLockManager(redis, timeout=timeout)
    return LocalLockManager()
