from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import partial
from typing import TypeVar

import httpx

from app.settings import Settings
from aviation.merge import MergedTrackSet, identify_missing, merge_tracks
from aviation.tracks import AircraftTrack
from cache.store import CacheStore
from health.health import SourceHealthRegistry
from ingest.errors import (
    CacheMissError,
    PartialAggregationFailure,
    SourceBackoffError,
    SourceError,
    SourceFailure,
    SourceFetchError,
)
from ingest.fetch import cap_sources, fan_out, fetch_source, raw_payload_from_dict
from ingest.registry import SourceDescriptor, WatchListEntry
from normalize.alerts import CanonicalAlert, normalize_alerts
from normalize.severity import rank_alerts

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRACKS_CACHE_KEY = "emergency:aircraft:tracks"

PrimaryFetcher = Callable[[], Awaitable[list[AircraftTrack]]]
FallbackFetcher = Callable[[list[str]], Awaitable[list[AircraftTrack]]]


def alert_cache_key(source_id: str) -> str:
    return f"emergency:alerts:{source_id}"


@dataclass(frozen=True)
class AggregationOptions:
    ttl_seconds: float
    stale_while_revalidate_seconds: float
    max_sources: int = 50
    per_source_timeout_ms: int = 8000
    missing_threshold_seconds: float = 15.0

    @property
    def timeout_s(self) -> float:
        return self.per_source_timeout_ms / 1000.0

    @classmethod
    def for_alerts(cls, settings: Settings) -> AggregationOptions:
        return cls(
            ttl_seconds=settings.alerts_ttl_seconds,
            stale_while_revalidate_seconds=settings.alerts_stale_while_revalidate_seconds,
            max_sources=settings.max_sources,
            per_source_timeout_ms=settings.per_source_timeout_ms,
            missing_threshold_seconds=settings.missing_threshold_seconds,
        )

    @classmethod
    def for_tracks(cls, settings: Settings) -> AggregationOptions:
        return cls(
            ttl_seconds=settings.tracks_ttl_seconds,
            stale_while_revalidate_seconds=settings.tracks_stale_while_revalidate_seconds,
            max_sources=settings.max_sources,
            per_source_timeout_ms=settings.per_source_timeout_ms,
            missing_threshold_seconds=settings.missing_threshold_seconds,
        )


@dataclass(frozen=True)
class AlertSnapshot:
    alerts: list[CanonicalAlert]
    stale: bool
    sources_count: int
    error: str | None = None
    failures: list[SourceFailure] = field(default_factory=list)
    # some but not all sources failed
    partial_failure: PartialAggregationFailure | None = None

    def to_dict(self) -> dict:
        metadata: dict = {
            "total_alerts": len(self.alerts),
            "sources_count": self.sources_count,
            "stale": self.stale,
            "failures": [f.to_dict() for f in self.failures],
        }
        if self.error is not None:
            metadata["error"] = self.error
        return {"alerts": [a.to_dict() for a in self.alerts], "metadata": metadata}


@dataclass(frozen=True)
class TrackSnapshot:
    tracks: MergedTrackSet
    stale: bool
    error: str | None = None
    fallback_used: bool = False
    missing: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        metadata: dict = {
            "total_tracked": len(self.tracks),
            "active_tracks": sum(1 for t in self.tracks.values() if not t.stale),
            "stale": self.stale,
            "fallback_used": self.fallback_used,
            "missing": list(self.missing),
        }
        if self.error is not None:
            metadata["error"] = self.error
        return {"tracks": [t.to_dict() for t in self.tracks.values()], "metadata": metadata}


async def _recorded(
    health: SourceHealthRegistry | None,
    source_id: str,
    base_interval_seconds: float,
    call: Awaitable[T],
) -> T:
    started = time.perf_counter()
    try:
        result = await call
    except SourceError as e:
        if health is not None:
            health.record_fetch_error(
                source_id=source_id,
                error=str(e),
                status_code=getattr(e, "status_code", None),
                fetch_ms=int((time.perf_counter() - started) * 1000),
                base_interval_seconds=base_interval_seconds,
            )
        raise
    if health is not None:
        health.record_fetch_success(
            source_id=source_id, fetch_ms=int((time.perf_counter() - started) * 1000)
        )
    return result


def _check_backoff(health: SourceHealthRegistry | None, source_id: str) -> None:
    if health is not None and health.is_backing_off(source_id):
        raise SourceBackoffError(
            f"backing off until {health.get(source_id).retry_after_at}", source_id=source_id
        )


async def _fetch_alert_payload(
    client: httpx.AsyncClient,
    descriptor: SourceDescriptor,
    options: AggregationOptions,
    user_agent: str,
    health: SourceHealthRegistry | None,
) -> dict | None:
    _check_backoff(health, descriptor.source_id)
    payload = await _recorded(
        health,
        descriptor.source_id,
        options.ttl_seconds,
        fetch_source(
            client, descriptor, timeout_s=options.timeout_s, user_agent=user_agent
        ),
    )
    return payload.to_dict() if payload is not None else None


async def aggregate_alerts(
    cache: CacheStore,
    client: httpx.AsyncClient,
    sources: Sequence[SourceDescriptor],
    options: AggregationOptions,
    *,
    user_agent: str,
    health: SourceHealthRegistry | None = None,
    now: datetime | None = None,
) -> AlertSnapshot:
    alert_sources = [s for s in sources if s.is_alert_source]
    if not alert_sources:
        return AlertSnapshot(alerts=[], stale=False, sources_count=0)

    processing = cap_sources(alert_sources, options.max_sources)

    async def job(descriptor: SourceDescriptor):
        return await cache.get_or_compute(
            alert_cache_key(descriptor.source_id),
            ttl=options.ttl_seconds,
            swr=options.stale_while_revalidate_seconds,
            producer=partial(
                _fetch_alert_payload, client, descriptor, options, user_agent, health
            ),
        )

    outcomes = await fan_out(processing, job)
    now = now or datetime.now(tz=UTC)

    alerts: list[CanonicalAlert] = []
    failures: list[SourceFailure] = []
    failed_sources = 0
    stale = False
    for descriptor, outcome in outcomes:
        if isinstance(outcome, Exception):
            logger.warning("failed to fetch alerts from %s: %s", descriptor.source_id, outcome)
            failures.append(SourceFailure.from_exception(descriptor.source_id, outcome))
            failed_sources += 1
            continue
        if isinstance(outcome, BaseException):
            raise outcome

        stale = stale or outcome.stale
        if outcome.error is not None:
            failures.append(
                SourceFailure(descriptor.source_id, "refresh_error", outcome.error)
            )
        normalized = normalize_alerts(
            raw_payload_from_dict(outcome.value), descriptor.source_id, descriptor, now=now
        )
        logger.debug(
            "source %s: %d alerts (%s)",
            descriptor.source_id,
            len(normalized),
            descriptor.stream_type,
        )
        alerts.extend(normalized)

    ranked = rank_alerts(alerts)
    logger.info(
        "aggregated %d alerts from %d sources (%d failed)",
        len(ranked),
        len(processing),
        failed_sources,
    )

    error = None
    partial_failure = None
    if failed_sources == len(processing):
        error = f"all {len(processing)} alert sources failed"
    elif failures:
        partial_failure = PartialAggregationFailure(failures, total=len(processing))
    return AlertSnapshot(
        alerts=ranked,
        stale=stale,
        sources_count=len(alert_sources),
        error=error,
        failures=failures,
        partial_failure=partial_failure,
    )


async def resolve_tracks(
    watch_list: Sequence[WatchListEntry],
    fetch_primary: PrimaryFetcher,
    fetch_fallback: FallbackFetcher,
    *,
    missing_threshold_s: float,
    health: SourceHealthRegistry | None = None,
    base_interval_seconds: float = 5.0,
) -> tuple[MergedTrackSet, bool]:
    primary: list[AircraftTrack] = []
    primary_error: SourceError | None = None
    try:
        _check_backoff(health, "adsb_lol")
        primary = await _recorded(health, "adsb_lol", base_interval_seconds, fetch_primary())
    except SourceError as e:
        logger.warning("primary aircraft feed failed: %s", e)
        primary_error = e

    missing = identify_missing(watch_list, primary, missing_threshold_s)
    fallback: list[AircraftTrack] = []
    fallback_error: SourceError | None = None
    if missing:
        logger.debug("looking up %d aircraft in the fallback feed", len(missing))
        try:
            _check_backoff(health, "opensky")
            fallback = await _recorded(
                health, "opensky", base_interval_seconds, fetch_fallback(missing)
            )
        except SourceError as e:
            logger.warning("fallback aircraft feed failed: %s", e)
            fallback_error = e

    if primary_error is not None and (fallback_error is not None or not missing):
        raise SourceFetchError(
            "primary and fallback aircraft feeds failed", source_id="aircraft"
        ) from (fallback_error or primary_error)

    merged = merge_tracks(primary, fallback, watch_list, missing_threshold_s)
    return merged, bool(missing)


async def aggregate_tracks(
    cache: CacheStore,
    watch_list: Sequence[WatchListEntry],
    fetch_primary: PrimaryFetcher,
    fetch_fallback: FallbackFetcher,
    options: AggregationOptions,
    *,
    health: SourceHealthRegistry | None = None,
) -> TrackSnapshot:
    if not watch_list:
        return TrackSnapshot(tracks={}, stale=False)

    async def producer() -> dict:
        merged, fallback_used = await resolve_tracks(
            watch_list,
            fetch_primary,
            fetch_fallback,
            missing_threshold_s=options.missing_threshold_seconds,
            health=health,
            base_interval_seconds=options.ttl_seconds,
        )
        return {
            "tracks": [t.to_dict() for t in merged.values()],
            "fallback_used": fallback_used,
        }

    try:
        result = await cache.get_or_compute(
            TRACKS_CACHE_KEY,
            ttl=options.ttl_seconds,
            swr=options.stale_while_revalidate_seconds,
            producer=producer,
        )
    except CacheMissError as e:
        logger.warning("aircraft tracks unavailable: %s", e)
        return TrackSnapshot(
            tracks={},
            stale=False,
            error=str(e),
            missing=tuple(entry.icao24 for entry in watch_list),
        )

    tracks: MergedTrackSet = {}
    for doc in result.value.get("tracks") or []:
        track = AircraftTrack.from_dict(doc)
        # age from the feed plus time spent in the cache
        age_s = track.age_s + result.age
        tracks[track.icao24] = replace(
            track, age_s=age_s, stale=age_s > options.missing_threshold_seconds
        )
    return TrackSnapshot(
        tracks=tracks,
        stale=result.stale,
        error=result.error,
        fallback_used=bool(result.value.get("fallback_used")),
        missing=tuple(e.icao24 for e in watch_list if e.icao24 not in tracks),
    )
