from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import UTC, datetime

_INFO_FIELDS = (
    ("event", "event"),
    ("headline", "headline"),
    ("severity", "severity"),
    ("urgency", "urgency"),
    ("certainty", "certainty"),
    ("web", "web"),
)

_INFO_TIMES = ("onset", "effective", "expires")


def _utc_iso(value: str | None) -> str | None:
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        return text
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    try:
        parsed = parsed.astimezone(tz=UTC)
    except (OverflowError, ValueError):
        return None
    return parsed.isoformat().replace("+00:00", "Z")


def _lon_lat(pair: str) -> list[float] | None:
    # CAP writes "lat,lon"; GeoJSON wants [lon, lat]
    lat, sep, lon = pair.partition(",")
    if not sep:
        return None
    try:
        return [float(lon), float(lat)]
    except ValueError:
        return None


def _ring(text: str) -> list[list[float]] | None:
    ring = [p for p in (_lon_lat(pair) for pair in text.split()) if p is not None]
    if ring and ring[0] != ring[-1]:
        ring.append(ring[0])
    return ring if len(ring) >= 4 else None


def _area_geometry(area: ET.Element) -> dict | None:
    rings = [
        ring
        for ring in (_ring(el.text or "") for el in area.findall("{*}polygon"))
        if ring is not None
    ]
    if len(rings) == 1:
        return {"type": "Polygon", "coordinates": rings}
    if rings:
        return {"type": "MultiPolygon", "coordinates": [[r] for r in rings]}

    # "lat,lon radius_km"; only the centre is kept
    circle = (area.findtext("{*}circle") or "").split()
    centre = _lon_lat(circle[0]) if circle else None
    if centre is not None:
        return {"type": "Point", "coordinates": centre}
    return None


def _info_record(info: ET.Element, header: dict, index: int) -> dict:
    record = dict(header, index=index)
    for key, tag in _INFO_FIELDS:
        record[key] = info.findtext(f"{{*}}{tag}")
    for key in _INFO_TIMES:
        record[key] = _utc_iso(info.findtext(f"{{*}}{key}"))
    record["description"] = info.findtext("{*}description") or ""
    record["instruction"] = info.findtext("{*}instruction") or ""

    record["area_desc"] = None
    record["geom"] = None
    for area in info.findall("{*}area"):
        record["area_desc"] = area.findtext("{*}areaDesc") or record["area_desc"]
        if record["geom"] is None:
            record["geom"] = _area_geometry(area)
    return record


def parse_cap_alerts(data: str | bytes) -> list[dict]:
    """One record per ``<info>`` block of each ``<alert>``; a feed may wrap many alerts."""
    root = ET.fromstring(data)
    alerts = [root] if root.tag.endswith("alert") else root.findall(".//{*}alert")

    records: list[dict] = []
    for alert in alerts:
        header = {
            "identifier": alert.findtext("{*}identifier") or "",
            "sent": _utc_iso(alert.findtext("{*}sent")),
            "status": alert.findtext("{*}status"),
            "msg_type": alert.findtext("{*}msgType"),
        }
        for index, info in enumerate(alert.findall("{*}info")):
            records.append(_info_record(info, header, index))
    return records
