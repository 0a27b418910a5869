"""
Key-value storage backends for playlist data.
Only single-key get/put is required; no transactions, listing or deletes.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Any

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """String to string store with atomic single-key reads and writes"""

    backend_name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        ...

    async def close(self):
        pass


class MemoryKeyValueStore(KeyValueStore):
    """In-process store, used for single-worker deployments and tests"""

    backend_name = "memory"

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def put(self, key: str, value: str) -> None:
        self.data[key] = value


class RedisKeyValueStore(KeyValueStore):
    backend_name = "redis"

    def __init__(self, redis_url: Optional[str] = None, client: Optional[Any] = None):
        self.redis_url = redis_url or get_redis_url()
        # Strings in, strings out
        self.client = client or redis.from_url(
            self.redis_url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def close(self):
        await self.client.aclose()
        logger.info("Redis connection closed")


def get_redis_url() -> str:
    """Build the Redis connection URL from settings"""
    auth = f":{settings.REDIS_PASSWORD}@" if settings.REDIS_PASSWORD else ""
    return f"redis://{auth}{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}"


def create_kv_store() -> KeyValueStore:
    if settings.REDIS_ENABLED:
        logger.info(
            f"Using Redis playlist storage at {settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}")
        return RedisKeyValueStore()
    logger.info("Using in-memory playlist storage (single-worker mode)")
    return MemoryKeyValueStore()
