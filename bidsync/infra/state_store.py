"""
Shared state store: key/value with prefix scan and publish/subscribe.

The store is the durability boundary of the engine. Other processes may read
and write the same keys, so callers must treat every read as possibly stale.

Backends:
- RedisStateStore: redis.asyncio, used in production
- MemoryStateStore: in-process, used for dry runs and tests
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Protocol, Set

import redis.asyncio as aioredis

log = logging.getLogger("bidsync")


class SharedStateStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> List[str]: ...

    async def publish(self, channel: str, message: str) -> None: ...

    def subscribe(self, channel: str) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class RedisStateStore:
    def __init__(self, url: str = "redis://127.0.0.1:6379/0", client: Optional[aioredis.Redis] = None) -> None:
        self.url = url
        # A caller-provided client is not closed by close()
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = aioredis.Redis.from_url(url, decode_responses=True)
            self._owns_client = True

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def keys(self, prefix: str) -> List[str]:
        # SCAN instead of KEYS so a large keyspace does not block the server
        return [k async for k in self._client.scan_iter(match=f"{prefix}*")]

    async def publish(self, channel: str, message: str) -> None:
        await self._client.publish(channel, message)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class MemoryStateStore:
    """Single-process store with the same semantics as the Redis backend."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self.published: List[tuple[str, str]] = []

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def publish(self, channel: str, message: str) -> None:
        self.published.append((channel, message))
        for q in self._subscribers.get(channel, set()):
            q.put_nowait(message)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(channel, set()).add(q)
        try:
            while True:
                yield await q.get()
        finally:
            self._subscribers[channel].discard(q)

    async def close(self) -> None:
        self._subscribers.clear()


def build_state_store(backend: str, redis_url: str) -> SharedStateStore:
    if backend == "memory":
        log.warning('{"event":"state_store_memory","detail":"ledger will not survive restarts"}')
        return MemoryStateStore()
    if backend == "redis":
        return RedisStateStore(redis_url)
    raise ValueError(f"unknown state store backend: {backend!r}")
