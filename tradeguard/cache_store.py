# tradeguard/cache_store.py
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as aioredis


class CacheStore(ABC):
    """Key/value store for serialized indicator snapshots. Exact overwrite, no TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def set(self, key: str, value: dict) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        pass


class InMemoryCacheStore(CacheStore):
    def __init__(self):
        self._data: Dict[str, dict] = {}

    async def get(self, key: str) -> Optional[dict]:
        return self._data.get(key)

    async def set(self, key: str, value: dict) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self):
        return len(self._data)


class RedisCacheStore(CacheStore):
    """
    Stores snapshots as JSON strings in Redis so several processes can share
    one cache. Decoding errors surface as ValueError and are handled by the
    caller as a miss.
    """
    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisCacheStore':
        logging.info(f"Connecting indicator cache to Redis at {url}")
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[dict]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: dict) -> None:
        await self.client.set(key, json.dumps(value))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        await self.client.aclose()


def build_cache_store(cfg) -> CacheStore:
    backend = cfg.CACHE_BACKEND.lower()
    if backend == 'redis':
        return RedisCacheStore.from_url(cfg.REDIS_URL)
    if backend != 'memory':
        raise ValueError(f"Unknown CACHE_BACKEND: {cfg.CACHE_BACKEND}")
    return InMemoryCacheStore()
