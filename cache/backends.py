from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    computed_at: float
    ttl: float
    stale_until: float
    error: str | None = None
    in_flight: bool = False

    def age(self, now: float) -> float:
        return now - self.computed_at

    def with_error(self, error: str) -> CacheEntry:
        return replace(self, error=error, in_flight=False)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "payload": self.payload,
            "computed_at": self.computed_at,
            "ttl": self.ttl,
            "stale_until": self.stale_until,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, doc: dict) -> CacheEntry:
        return cls(
            key=str(doc["key"]),
            payload=doc.get("payload"),
            computed_at=float(doc["computed_at"]),
            ttl=float(doc["ttl"]),
            stale_until=float(doc["stale_until"]),
            error=doc.get("error"),
        )


class CacheBackend(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, entry: CacheEntry, *, expire_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryBackend:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[CacheEntry, float]] = {}

    async def get(self, key: str) -> CacheEntry | None:
        item = self._entries.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return entry

    async def set(self, key: str, entry: CacheEntry, *, expire_seconds: float) -> None:
        self._entries[key] = (entry, self._clock() + max(0.0, expire_seconds))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisBackend:
    def __init__(self, client: Any, *, prefix: str = "") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "") -> RedisBackend:
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._client.get(self._key(key))
        except RedisError as e:
            logger.warning("redis get %s failed: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("discarding undecodable cache entry %s", key)
            await self.delete(key)
            return None

    async def set(self, key: str, entry: CacheEntry, *, expire_seconds: float) -> None:
        data = json.dumps(entry.to_dict(), ensure_ascii=False, separators=(",", ":"))
        try:
            await self._client.set(
                self._key(key), data, ex=max(1, math.ceil(expire_seconds))
            )
        except RedisError as e:
            logger.warning("redis set %s failed: %s", key, e)

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as e:
            logger.warning("redis delete %s failed: %s", key, e)

    async def aclose(self) -> None:
        await self._client.aclose()
