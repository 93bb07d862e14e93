"""Stale-while-revalidate cache with single-flight refresh.

An entry is fresh while ``age <= ttl``, served stale (with one background refresh)
while ``ttl < age <= ttl + swr``, and recomputed synchronously after that.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, Generic, TypeVar

from cache.backends import CacheBackend, CacheEntry, MemoryBackend
from cache.refresh import RefreshScheduler
from ingest.errors import CacheMissError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Producer = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    value: T
    stale: bool
    error: str | None = None
    # seconds since the value was computed
    age: float = 0.0


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class CacheStore:
    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        clock: Callable[[], float] = time.time,
        scheduler: RefreshScheduler | None = None,
    ) -> None:
        self._clock = clock
        self._backend = backend if backend is not None else MemoryBackend(clock=clock)
        self._scheduler = scheduler if scheduler is not None else RefreshScheduler()

    async def get_or_compute(
        self,
        key: str,
        *,
        ttl: float,
        swr: float,
        producer: Producer,
    ) -> CacheResult[Any]:
        entry = await self._backend.get(key)
        if entry is not None:
            age = entry.age(self._clock())
            if age <= ttl:
                return CacheResult(entry.payload, False, entry.error, max(0.0, age))
            if age <= ttl + swr:
                if not self._scheduler.is_running(key):
                    logger.debug("serving stale %s (age %.1fs), refreshing", key, age)
                self._scheduler.schedule(
                    key, partial(self._compute, key, ttl, swr, producer, entry)
                )
                return CacheResult(entry.payload, True, entry.error, age)

        task = self._scheduler.schedule(
            key, partial(self._compute, key, ttl, swr, producer, None)
        )
        try:
            # Waiters may be cancelled; the producer keeps running for later callers.
            fresh: CacheEntry = await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise CacheMissError(key, _error_message(exc)) from exc
        return CacheResult(fresh.payload, False, None)

    async def _compute(
        self,
        key: str,
        ttl: float,
        swr: float,
        producer: Producer,
        previous: CacheEntry | None,
    ) -> CacheEntry:
        try:
            payload = await producer()
        except Exception as exc:
            if previous is not None:
                remaining = previous.stale_until - self._clock()
                if remaining > 0:
                    await self._backend.set(
                        key,
                        previous.with_error(_error_message(exc)),
                        expire_seconds=remaining,
                    )
            raise

        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            computed_at=now,
            ttl=ttl,
            stale_until=now + ttl + swr,
        )
        await self._backend.set(key, entry, expire_seconds=ttl + swr)
        return entry

    async def peek(self, key: str) -> CacheEntry | None:
        entry = await self._backend.get(key)
        if entry is None:
            return None
        return replace(entry, in_flight=self._scheduler.is_running(key))

    async def invalidate(self, key: str) -> None:
        await self._backend.delete(key)

    def in_flight(self, key: str) -> bool:
        return self._scheduler.is_running(key)

    async def drain(self) -> None:
        await self._scheduler.drain()

    async def aclose(self) -> None:
        await self._scheduler.aclose()
        close = getattr(self._backend, "aclose", None)
        if close is not None:
            await close()
