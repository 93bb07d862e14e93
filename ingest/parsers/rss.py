from __future__ import annotations

import io
from datetime import UTC
from email.utils import parsedate_to_datetime

import feedparser


def _to_iso(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return (
            parsedate_to_datetime(value)
            .astimezone(tz=UTC)
            .isoformat()
            .replace("+00:00", "Z")
        )
    except (TypeError, ValueError, OverflowError):
        pass
    # Atom feeds carry RFC 3339 timestamps
    if "T" in value:
        return value.strip()
    return None


def _where(where: dict) -> dict | None:
    geom_type = where.get("type")
    coords = where.get("coordinates")
    if not coords:
        return None
    try:
        if geom_type == "Point":
            return {"type": "Point", "coordinates": [float(coords[0]), float(coords[1])]}
        if geom_type == "Polygon":
            rings = [[[float(p[0]), float(p[1])] for p in ring] for ring in coords]
            return {"type": "Polygon", "coordinates": rings}
    except (TypeError, ValueError, IndexError):
        return None
    return None


def _georss(entry: dict) -> dict | None:
    where = entry.get("where")
    if isinstance(where, dict):
        geom = _where(where)
        if geom is not None:
            return geom

    georss_point = entry.get("georss_point")
    if georss_point and isinstance(georss_point, str):
        try:
            lat_str, lon_str = georss_point.split()[:2]
            return {
                "type": "Point",
                "coordinates": [float(lon_str), float(lat_str)],
            }
        except ValueError:
            return None
    georss_polygon = entry.get("georss_polygon")
    if georss_polygon:
        try:
            nums = [float(x) for x in str(georss_polygon).split()]
        except ValueError:
            return None
        coords = [[nums[i + 1], nums[i]] for i in range(0, len(nums) - 1, 2)]
        if coords and coords[0] != coords[-1]:
            coords.append(coords[0])
        if len(coords) < 4:
            return None
        return {"type": "Polygon", "coordinates": [coords]}

    if entry.get("geo_lat") and entry.get("geo_long"):
        try:
            return {
                "type": "Point",
                "coordinates": [float(entry["geo_long"]), float(entry["geo_lat"])],
            }
        except ValueError:
            return None
    return None


def parse_rss(data: str | bytes) -> list[dict]:
    if isinstance(data, str):
        data = data.encode("utf-8")
    # feedparser treats bare strings as URLs or paths; only hand it a stream
    if not data.lstrip().startswith(b"<"):
        return []
    parsed = feedparser.parse(io.BytesIO(data))
    records: list[dict] = []
    for entry in parsed.entries:
        content = None
        if "content" in entry and entry["content"]:
            content = entry["content"][0].get("value")

        records.append(
            {
                "id": entry.get("id") or entry.get("guid") or entry.get("link"),
                "link": entry.get("link"),
                "title": entry.get("title", ""),
                "summary": entry.get("summary", ""),
                "content": content,
                "category": entry.get("category"),
                "published": _to_iso(entry.get("published")),
                "updated": _to_iso(entry.get("updated")),
                "georss": _georss(entry),
            }
        )
    return records
