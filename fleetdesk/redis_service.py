"""
Redis Service for FleetDesk
Shared client for cross-worker resource locks and hold idempotency records
"""

import redis.asyncio as aioredis
import json
from typing import Any, Optional, Dict
import logging

from .config import get_settings

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60

# Delete the lock key only when it still carries the caller's token
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lock_key(resource: str) -> str:
    return f"lock:{resource}"


def idempotency_key(key_hash: str) -> str:
    return f"idempotency:{key_hash}"


class RedisService:
    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or get_settings().redis_url
        self.redis_client: Optional[aioredis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        try:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.redis_client.ping()
            logger.info(f"Connected to Redis at {self.redis_url}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def ensure_connected(self) -> aioredis.Redis:
        if not self.redis_client:
            await self.connect()
        return self.redis_client

    async def disconnect(self):
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None
            logger.info("Disconnected from Redis")

    # Resource locks (vehicle:{id}, booking:{id})
    async def acquire_lock(self, resource: str, token: str, timeout: int = 30) -> bool:
        """
        Single attempt at SET NX EX on the resource key.
        The expiry frees the resource if the holder dies mid-transaction.
        """
        client = await self.ensure_connected()
        acquired = await client.set(lock_key(resource), token, nx=True, ex=timeout)
        if acquired:
            logger.debug(f"Acquired lock for {resource}")
        return bool(acquired)

    async def release_lock(self, resource: str, token: str) -> bool:
        client = await self.ensure_connected()
        try:
            released = await client.eval(RELEASE_LOCK_SCRIPT, 1, lock_key(resource), token)
        except Exception as e:
            logger.error(f"Error releasing lock for {resource}: {e}")
            return False
        if not released:
            logger.warning(f"Lock for {resource} expired before release")
        return bool(released)

    # Hold idempotency records
    async def get_idempotency_result(self, key_hash: str) -> Optional[Dict[str, Any]]:
        client = await self.ensure_connected()
        try:
            stored = await client.get(idempotency_key(key_hash))
        except Exception as e:
            logger.error(f"Error reading idempotency key {key_hash}: {e}")
            return None
        if not stored:
            return None
        try:
            return json.loads(stored)
        except ValueError:
            logger.warning(f"Discarding unreadable idempotency record {key_hash}")
            return None

    async def store_idempotency_key(self, key_hash: str, result: Dict[str, Any]) -> bool:
        client = await self.ensure_connected()
        try:
            return bool(await client.set(
                idempotency_key(key_hash),
                json.dumps(result, default=str),
                ex=IDEMPOTENCY_TTL_SECONDS,
                nx=True,
            ))
        except Exception as e:
            logger.error(f"Error storing idempotency key {key_hash}: {e}")
            return False


# Global Redis service instance
redis_service = RedisService()
