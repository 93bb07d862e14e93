from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.settings import Settings
from aviation.feeds import fetch_adsb_lol, fetch_opensky, parse_regions
from cache.backends import MemoryBackend, RedisBackend
from cache.store import CacheStore
from health.health import SourceHealthRegistry
from ingest.aggregate import AggregationOptions, aggregate_alerts, aggregate_tracks
from ingest.registry import load_registry

logger = logging.getLogger(__name__)


def _open_cache(settings: Settings) -> CacheStore:
    if settings.redis_url:
        logger.info("using redis cache backend")
        return CacheStore(RedisBackend.from_url(settings.redis_url))
    return CacheStore(MemoryBackend())


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.per_source_timeout_ms / 1000.0),
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
    )
    cache = _open_cache(settings)
    registry = load_registry(settings.registry_path)
    logger.info(
        "loaded %d sources and %d watched aircraft from %s",
        len(registry.sources),
        len(registry.watch_list),
        settings.registry_path,
    )

    app.state.settings = settings
    app.state.client = client
    app.state.cache = cache
    app.state.registry = registry
    app.state.health = SourceHealthRegistry()
    app.state.regions = parse_regions(settings.adsb_lol_regions)
    try:
        yield
    finally:
        await cache.aclose()
        await client.aclose()


app = FastAPI(lifespan=lifespan)


@app.get("/api/emergency/alerts")
async def api_alerts(request: Request) -> JSONResponse:
    settings: Settings = request.app.state.settings
    snapshot = await aggregate_alerts(
        request.app.state.cache,
        request.app.state.client,
        request.app.state.registry.sources,
        AggregationOptions.for_alerts(settings),
        user_agent=settings.user_agent,
        health=request.app.state.health,
    )
    return JSONResponse(snapshot.to_dict())


@app.get("/api/emergency/tracks")
async def api_tracks(request: Request) -> JSONResponse:
    settings: Settings = request.app.state.settings
    client: httpx.AsyncClient = request.app.state.client
    options = AggregationOptions.for_tracks(settings)
    fetch_primary = partial(
        fetch_adsb_lol,
        client,
        request.app.state.regions,
        base_url=settings.adsb_lol_base_url,
        timeout_s=settings.adsb_lol_timeout_ms / 1000.0,
        user_agent=settings.user_agent,
        stale_after_s=options.missing_threshold_seconds,
    )
    fetch_fallback = partial(
        fetch_opensky,
        client,
        base_url=settings.opensky_base_url,
        timeout_s=options.timeout_s,
        user_agent=settings.user_agent,
        stale_after_s=options.missing_threshold_seconds,
        client_id=settings.opensky_client_id,
        client_secret=settings.opensky_client_secret,
    )
    snapshot = await aggregate_tracks(
        request.app.state.cache,
        request.app.state.registry.watch_list,
        fetch_primary,
        fetch_fallback,
        options,
        health=request.app.state.health,
    )
    return JSONResponse(snapshot.to_dict())


@app.get("/api/health/sources")
def api_source_health(request: Request) -> JSONResponse:
    health: SourceHealthRegistry = request.app.state.health
    return JSONResponse(health.snapshot())
