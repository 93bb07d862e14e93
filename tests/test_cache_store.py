import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache.backends import CacheEntry, MemoryBackend, RedisBackend
from cache.store import CacheStore
from ingest.errors import CacheMissError, SourceFetchError


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingProducer:
    def __init__(self, *values, gate: asyncio.Event | None = None) -> None:
        self.values = list(values)
        self.calls = 0
        self.gate = gate

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        value = self.values[min(self.calls, len(self.values)) - 1]
        if isinstance(value, Exception):
            raise value
        return value


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.fail_reads = False
        self.closed = False

    async def get(self, key):
        if self.fail_reads:
            raise RedisConnectionError("connection refused")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_miss_computes_then_fresh_hit_skips_producer() -> None:
    clock = FakeClock()
    cache = CacheStore(clock=clock)
    producer = CountingProducer("v1")

    first = await cache.get_or_compute("emergency:alerts:a", ttl=60, swr=300, producer=producer)
    clock.advance(60)
    second = await cache.get_or_compute("emergency:alerts:a", ttl=60, swr=300, producer=producer)

    assert first.value == "v1" and first.stale is False
    # age == ttl is still fresh
    assert second.value == "v1" and second.stale is False
    assert (first.age, second.age) == (0.0, 60)
    assert producer.calls == 1


@pytest.mark.asyncio
async def test_stale_hit_returns_old_value_and_refreshes_once() -> None:
    clock = FakeClock()
    cache = CacheStore(clock=clock)
    await cache.get_or_compute("k", ttl=60, swr=300, producer=CountingProducer("old"))
    clock.advance(61)

    gate = asyncio.Event()
    refresh = CountingProducer("new", gate=gate)
    results = [
        await cache.get_or_compute("k", ttl=60, swr=300, producer=refresh)
        for _ in range(3)
    ]
    await asyncio.sleep(0)

    assert [r.value for r in results] == ["old", "old", "old"]
    assert all(r.stale for r in results)
    assert all(r.age == 61 for r in results)
    assert cache.in_flight("k")
    assert refresh.calls == 1

    gate.set()
    await cache.drain()
    fresh = await cache.get_or_compute("k", ttl=60, swr=300, producer=refresh)
    assert fresh.value == "new" and fresh.stale is False
    assert refresh.calls == 1


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_producer_call() -> None:
    cache = CacheStore(clock=FakeClock())
    gate = asyncio.Event()
    producer = CountingProducer("shared", gate=gate)

    tasks = [
        asyncio.create_task(cache.get_or_compute("k", ttl=5, swr=30, producer=producer))
        for _ in range(5)
    ]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks)

    assert producer.calls == 1
    assert {r.value for r in results} == {"shared"}


@pytest.mark.asyncio
async def test_entry_past_stale_window_is_recomputed_synchronously() -> None:
    clock = FakeClock()
    cache = CacheStore(clock=clock)
    producer = CountingProducer("v1", "v2")
    await cache.get_or_compute("k", ttl=5, swr=30, producer=producer)
    clock.advance(36)

    result = await cache.get_or_compute("k", ttl=5, swr=30, producer=producer)

    assert result.value == "v2"
    assert result.stale is False
    assert producer.calls == 2


@pytest.mark.asyncio
async def test_miss_with_failing_producer_raises_cache_miss() -> None:
    cache = CacheStore(clock=FakeClock())
    cause = SourceFetchError("http_500", source_id="a", status_code=500)

    with pytest.raises(CacheMissError) as excinfo:
        await cache.get_or_compute("k", ttl=5, swr=30, producer=CountingProducer(cause))

    assert excinfo.value.key == "k"
    assert excinfo.value.__cause__ is cause
    assert await cache.peek("k") is None


@pytest.mark.asyncio
async def test_failed_background_refresh_keeps_value_and_records_error() -> None:
    clock = FakeClock()
    cache = CacheStore(clock=clock)
    producer = CountingProducer("good", SourceFetchError("http_503", status_code=503))
    await cache.get_or_compute("k", ttl=60, swr=300, producer=producer)
    clock.advance(90)

    stale = await cache.get_or_compute("k", ttl=60, swr=300, producer=producer)
    await cache.drain()
    after = await cache.get_or_compute("k", ttl=60, swr=300, producer=producer)

    assert stale.value == "good" and stale.stale is True and stale.error is None
    assert after.value == "good" and after.stale is True
    assert after.error == "http_503"
    await cache.drain()


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_producer() -> None:
    cache = CacheStore(clock=FakeClock())
    gate = asyncio.Event()
    producer = CountingProducer("value", gate=gate)

    waiter = asyncio.create_task(cache.get_or_compute("k", ttl=5, swr=30, producer=producer))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    gate.set()
    await cache.drain()
    entry = await cache.peek("k")
    assert entry is not None
    assert entry.payload == "value"
    assert entry.in_flight is False


@pytest.mark.asyncio
async def test_invalidate_forces_recompute() -> None:
    cache = CacheStore(clock=FakeClock())
    producer = CountingProducer("v1", "v2")
    await cache.get_or_compute("k", ttl=60, swr=60, producer=producer)

    await cache.invalidate("k")
    result = await cache.get_or_compute("k", ttl=60, swr=60, producer=producer)

    assert result.value == "v2"


@pytest.mark.asyncio
async def test_memory_backend_evicts_expired_entries() -> None:
    clock = FakeClock()
    backend = MemoryBackend(clock=clock)
    entry = CacheEntry(key="k", payload=1, computed_at=clock(), ttl=5, stale_until=clock() + 35)
    await backend.set("k", entry, expire_seconds=35)

    clock.advance(35)
    assert await backend.get("k") == entry
    clock.advance(1)
    assert await backend.get("k") is None
    assert len(backend) == 0


@pytest.mark.asyncio
async def test_redis_backend_stores_json_with_expiry() -> None:
    fake = FakeRedis()
    clock = FakeClock()
    cache = CacheStore(RedisBackend(fake, prefix="test:"), clock=clock)

    await cache.get_or_compute(
        "emergency:aircraft:tracks", ttl=5, swr=30, producer=CountingProducer({"tracks": []})
    )

    stored = json.loads(fake.data["test:emergency:aircraft:tracks"])
    assert stored["payload"] == {"tracks": []}
    assert stored["stale_until"] == clock() + 35
    assert fake.expiry["test:emergency:aircraft:tracks"] == 35

    clock.advance(10)
    result = await cache.get_or_compute(
        "emergency:aircraft:tracks", ttl=5, swr=30, producer=CountingProducer({"tracks": [1]})
    )
    assert result.stale is True
    assert result.value == {"tracks": []}

    await cache.aclose()
    assert fake.closed


@pytest.mark.asyncio
async def test_redis_read_errors_degrade_to_miss() -> None:
    fake = FakeRedis()
    fake.fail_reads = True
    cache = CacheStore(RedisBackend(fake), clock=FakeClock())
    producer = CountingProducer("computed")

    result = await cache.get_or_compute("k", ttl=5, swr=30, producer=producer)

    assert result.value == "computed"
    assert producer.calls == 1


@pytest.mark.asyncio
async def test_redis_backend_discards_undecodable_entries() -> None:
    fake = FakeRedis()
    fake.data["k"] = "{not json"
    backend = RedisBackend(fake)

    assert await backend.get("k") is None
    assert "k" not in fake.data
