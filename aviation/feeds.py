from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from aviation.tracks import AircraftTrack, tracks_from_adsb_lol, tracks_from_opensky
from ingest.errors import SourceError, SourceFetchError
from ingest.fetch import RawJson, fan_out, fetch_source
from ingest.registry import SourceDescriptor

logger = logging.getLogger(__name__)

ADSB_LOL_MAX_RADIUS_NM = 250.0


@dataclass(frozen=True)
class Region:
    lat: float
    lon: float
    dist_nm: float = ADSB_LOL_MAX_RADIUS_NM

    @property
    def label(self) -> str:
        return f"{self.lat:.2f},{self.lon:.2f}"


def parse_regions(value: str) -> list[Region]:
    regions: list[Region] = []
    for part in value.split(";"):
        part = part.strip()
        if not part:
            continue
        fields = [f.strip() for f in part.split(",")]
        if len(fields) not in (2, 3):
            raise ValueError(f"invalid region: {part!r}")
        dist = float(fields[2]) if len(fields) == 3 else ADSB_LOL_MAX_RADIUS_NM
        regions.append(
            Region(lat=float(fields[0]), lon=float(fields[1]), dist_nm=min(dist, ADSB_LOL_MAX_RADIUS_NM))
        )
    return regions


def _descriptor(source_id: str, url: str) -> SourceDescriptor:
    return SourceDescriptor(
        source_id=source_id,
        endpoint_url=url,
        category="Aviation",
        stream_type="json",
        machine_readable=True,
    )


async def fetch_adsb_lol(
    client: httpx.AsyncClient,
    regions: Sequence[Region],
    *,
    base_url: str,
    timeout_s: float,
    user_agent: str,
    stale_after_s: float,
) -> list[AircraftTrack]:
    if not regions:
        return []

    async def job(region: Region) -> list[AircraftTrack]:
        url = f"{base_url.rstrip('/')}/v2/lat/{region.lat}/lon/{region.lon}/dist/{region.dist_nm:g}"
        payload = await fetch_source(
            client,
            _descriptor(f"adsb_lol:{region.label}", url),
            timeout_s=timeout_s,
            user_agent=user_agent,
        )
        if not isinstance(payload, RawJson):
            return []
        return tracks_from_adsb_lol(payload.data, stale_after_s=stale_after_s)

    tracks: list[AircraftTrack] = []
    failures: list[SourceError] = []
    seen: set[str] = set()
    for region, outcome in await fan_out(regions, job):
        if isinstance(outcome, SourceError):
            logger.warning("adsb.lol region %s failed: %s", region.label, outcome)
            failures.append(outcome)
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        # regions overlap; first region to report an aircraft wins
        for track in outcome:
            if track.icao24 in seen:
                continue
            seen.add(track.icao24)
            tracks.append(track)

    if failures and len(failures) == len(regions):
        raise SourceFetchError(
            f"all {len(regions)} adsb.lol regions failed: {failures[0]}",
            source_id="adsb_lol",
            status_code=getattr(failures[0], "status_code", None),
        )
    return tracks


async def fetch_opensky(
    client: httpx.AsyncClient,
    icao24_list: Sequence[str],
    *,
    base_url: str,
    timeout_s: float,
    user_agent: str,
    stale_after_s: float,
    client_id: str | None = None,
    client_secret: str | None = None,
) -> list[AircraftTrack]:
    if not icao24_list:
        return []

    query = urlencode([("icao24", hex_id.lower()) for hex_id in icao24_list])
    auth = None
    if client_id and client_secret:
        auth = httpx.BasicAuth(client_id, client_secret)
    else:
        logger.debug("OpenSky credentials not configured, using anonymous access")

    payload = await fetch_source(
        client,
        _descriptor("opensky", f"{base_url.rstrip('/')}/states/all?{query}"),
        timeout_s=timeout_s,
        user_agent=user_agent,
        auth=auth,
    )
    if not isinstance(payload, RawJson):
        return []
    return tracks_from_opensky(payload.data, now=time.time(), stale_after_s=stale_after_s)
