"""
Aircraft position records and the parsers for the two upstream feeds.

adsb.lol v2 (primary) reports per-aircraft objects with ``seen`` in seconds,
``alt_baro`` in feet (or the string ``"ground"``) and ``gs`` in knots.

OpenSky ``/states/all`` (fallback) reports state vectors as arrays:
0 icao24, 1 callsign, 2 origin_country, 3 time_position, 4 last_contact,
5 longitude, 6 latitude, 7 baro_altitude (m), 8 on_ground, 9 velocity (m/s),
10 true_track, 11 vertical_rate (m/s), 12 sensors, 13 geo_altitude (m), ...
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

FEET_TO_METRES = 0.3048
KNOTS_TO_MPS = 0.514444
FPM_TO_MPS = FEET_TO_METRES / 60.0


class Provenance(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class AircraftTrack:
    icao24: str
    lat: float
    lon: float
    alt_m: float
    ground_speed_mps: float
    track_deg: float
    age_s: float
    stale: bool
    source_provenance: Provenance
    vertical_rate: float | None = None
    registration: str | None = None
    operator: str | None = None
    role: str | None = None
    callsign: str | None = None
    on_ground: bool | None = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["source_provenance"] = self.source_provenance.value
        return out

    @classmethod
    def from_dict(cls, doc: dict) -> AircraftTrack:
        return cls(**{**doc, "source_provenance": Provenance(doc["source_provenance"])})


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _callsign(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _valid_position(lat: float | None, lon: float | None) -> bool:
    return (
        lat is not None
        and lon is not None
        and -90.0 <= lat <= 90.0
        and -180.0 <= lon <= 180.0
    )


def tracks_from_adsb_lol(
    payload: Any,
    *,
    stale_after_s: float,
    provenance: Provenance = Provenance.PRIMARY,
) -> list[AircraftTrack]:
    if not isinstance(payload, dict):
        return []
    aircraft = payload.get("ac")
    if not isinstance(aircraft, list):
        return []

    tracks: list[AircraftTrack] = []
    for ac in aircraft:
        if not isinstance(ac, dict):
            continue
        hex_id = ac.get("hex")
        if not isinstance(hex_id, str) or not hex_id.strip():
            continue
        lat = _number(ac.get("lat"))
        lon = _number(ac.get("lon"))
        if not _valid_position(lat, lon):
            continue

        age_s = _number(ac.get("seen_pos"))
        if age_s is None:
            age_s = _number(ac.get("seen")) or 0.0
        alt_baro = ac.get("alt_baro")
        alt_ft = _number(alt_baro)
        if alt_ft is None:
            alt_ft = _number(ac.get("alt_geom")) or 0.0
        baro_rate = _number(ac.get("baro_rate"))

        tracks.append(
            AircraftTrack(
                # adsb.lol prefixes non-ICAO (TIS-B) addresses with "~"
                icao24=hex_id.strip().lstrip("~").lower(),
                lat=lat,
                lon=lon,
                alt_m=alt_ft * FEET_TO_METRES,
                ground_speed_mps=(_number(ac.get("gs")) or 0.0) * KNOTS_TO_MPS,
                track_deg=_number(ac.get("track")) or 0.0,
                vertical_rate=baro_rate * FPM_TO_MPS if baro_rate is not None else None,
                age_s=age_s,
                stale=age_s > stale_after_s,
                source_provenance=provenance,
                registration=_callsign(ac.get("r")),
                callsign=_callsign(ac.get("flight")),
                on_ground=alt_baro == "ground",
            )
        )
    return tracks


def _state_fields(state: Any) -> dict | None:
    if isinstance(state, dict):
        return state
    if isinstance(state, list) and len(state) >= 14:
        return {
            "icao24": state[0],
            "callsign": state[1],
            "last_contact": state[4],
            "longitude": state[5],
            "latitude": state[6],
            "baro_altitude": state[7],
            "on_ground": state[8],
            "velocity": state[9],
            "true_track": state[10],
            "vertical_rate": state[11],
            "geo_altitude": state[13],
        }
    return None


def tracks_from_opensky(
    payload: Any,
    *,
    now: float,
    stale_after_s: float,
    provenance: Provenance = Provenance.FALLBACK,
) -> list[AircraftTrack]:
    if not isinstance(payload, dict):
        return []
    states = payload.get("states")
    if not isinstance(states, list):
        return []

    tracks: list[AircraftTrack] = []
    for state in states:
        fields = _state_fields(state)
        if fields is None:
            continue
        icao24 = fields.get("icao24")
        if not isinstance(icao24, str) or not icao24.strip():
            continue
        lat = _number(fields.get("latitude"))
        lon = _number(fields.get("longitude"))
        if not _valid_position(lat, lon):
            continue
        last_contact = _number(fields.get("last_contact"))
        if last_contact is None:
            continue

        age_s = max(0.0, float(math.floor(now - last_contact)))
        alt_m = _number(fields.get("baro_altitude"))
        if alt_m is None:
            alt_m = _number(fields.get("geo_altitude")) or 0.0

        tracks.append(
            AircraftTrack(
                icao24=icao24.strip().lower(),
                lat=lat,
                lon=lon,
                alt_m=alt_m,
                ground_speed_mps=_number(fields.get("velocity")) or 0.0,
                track_deg=_number(fields.get("true_track")) or 0.0,
                vertical_rate=_number(fields.get("vertical_rate")),
                age_s=age_s,
                stale=age_s > stale_after_s,
                source_provenance=provenance,
                callsign=_callsign(fields.get("callsign")),
                on_ground=bool(fields.get("on_ground")),
            )
        )
    return tracks
