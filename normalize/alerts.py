from __future__ import annotations

import logging
import math
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from ingest.fetch import RawJson, RawPayload, RawText
from ingest.parsers.arcgis import parse_arcgis_features
from ingest.parsers.cap import parse_cap_alerts
from ingest.parsers.geojson import parse_geojson
from ingest.parsers.json import parse_json_records
from ingest.parsers.rss import parse_rss
from ingest.registry import SourceDescriptor
from normalize.severity import Severity, severity_from_cap, severity_from_label

logger = logging.getLogger(__name__)

SENTINEL_GEOMETRY: dict = {"type": "Point", "coordinates": [0.0, 0.0]}

_RECORD_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError, OverflowError)


@dataclass(frozen=True)
class CanonicalAlert:
    id: str
    source_id: str
    category: str
    subcategory: str
    state: str
    hazard_type: str
    severity: Severity
    severity_rank: int
    title: str
    description: str
    issued_at: str
    updated_at: str
    confidence: str
    age_s: int
    geometry: dict = field(default_factory=lambda: dict(SENTINEL_GEOMETRY))
    geometry_is_sentinel: bool = True
    expires_at: str | None = None
    url: str | None = None
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        out = asdict(self)
        out["severity"] = self.severity.value
        out["tags"] = list(self.tags)
        return out


def _iso(dt: datetime) -> str:
    return dt.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime | None:
    """Parse epoch seconds/milliseconds, ISO 8601 or RFC 2822 into a UTC datetime.

    Anything unparseable or outside the representable range is None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            if not math.isfinite(value) or value <= 0:
                return None
            seconds = value / 1000.0 if value > 1e11 else float(value)
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.isdigit():
        try:
            return parse_timestamp(int(text))
        except ValueError:
            return None
    if text.endswith("Z"):
        text = text.removesuffix("Z") + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        try:
            dt = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    try:
        return dt.astimezone(tz=UTC)
    except (OverflowError, ValueError):
        return None


def _first(mapping: dict, *keys: str) -> object:
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value)


def _valid_geometry(geom: object) -> dict | None:
    if not isinstance(geom, dict):
        return None
    geom_type = geom.get("type")
    if not isinstance(geom_type, str):
        return None
    if geom_type == "GeometryCollection":
        return geom if geom.get("geometries") else None
    coords = geom.get("coordinates")
    if not isinstance(coords, (list, tuple)) or not coords:
        return None
    return geom


def build_alert(
    descriptor: SourceDescriptor,
    *,
    alert_id: str,
    hazard_type: str,
    severity: Severity,
    title: str,
    description: str,
    issued: object,
    updated: object,
    expires: object,
    url: object,
    confidence: str,
    geometry: object,
    now: datetime,
    subcategory: str | None = None,
) -> CanonicalAlert:
    issued_dt = parse_timestamp(issued)
    updated_dt = parse_timestamp(updated)
    reference = issued_dt or updated_dt or now
    expires_dt = parse_timestamp(expires)
    geom = _valid_geometry(geometry)

    return CanonicalAlert(
        id=alert_id,
        source_id=descriptor.source_id,
        category=descriptor.category or "Alerts",
        subcategory=subcategory if subcategory is not None else descriptor.subcategory,
        state=descriptor.jurisdiction_state or "AUS",
        hazard_type=hazard_type or descriptor.subcategory or "Hazard",
        severity=severity,
        severity_rank=severity.rank,
        title=title,
        description=description,
        issued_at=_iso(reference),
        updated_at=_iso(updated_dt or reference),
        expires_at=_iso(expires_dt) if expires_dt is not None else None,
        url=_text(url) or None,
        confidence=confidence,
        age_s=max(0, math.floor((now - reference).total_seconds())),
        geometry=geom if geom is not None else dict(SENTINEL_GEOMETRY),
        geometry_is_sentinel=geom is None,
        tags=descriptor.tags,
    )


def _from_geojson_feature(
    record: dict, index: int, descriptor: SourceDescriptor, now: datetime
) -> CanonicalAlert:
    props = record.get("properties") or {}
    feature_type = _text(props.get("type"))
    severity_label = _first(
        props, "severity", "alertLevel", "alert_level", "warning_level", "level", "category"
    )
    issued = _first(props, "issued_at", "issued", "published", "pubDate", "timestamp", "sent")
    return build_alert(
        descriptor,
        alert_id=_text(_first(props, "id", "guid") or record.get("id"))
        or f"{descriptor.source_id}:{index}",
        hazard_type=_text(_first(props, "hazard_type", "event"))
        or (feature_type if feature_type and feature_type != "Feature" else ""),
        severity=severity_from_label(severity_label),
        title=_text(_first(props, "title", "name", "headline")) or "Alert",
        description=_text(_first(props, "description", "summary")),
        issued=issued,
        updated=_first(props, "updated_at", "updated", "lastUpdated"),
        expires=_first(props, "expires_at", "expires"),
        url=_first(props, "url", "link", "web"),
        confidence=_text(props.get("confidence")) or "medium",
        geometry=record.get("geometry"),
        now=now,
    )


def _from_arcgis_record(
    record: dict, index: int, descriptor: SourceDescriptor, now: datetime
) -> CanonicalAlert:
    attr = record["attributes"]
    object_id = _first(attr, "OBJECTID", "id", "GlobalID")
    description = _first(attr, "description", "DESCRIPT", "SUMMARY", "REMARKS")
    return build_alert(
        descriptor,
        alert_id=f"{descriptor.source_id}:{object_id if object_id is not None else index}",
        hazard_type=descriptor.subcategory,
        severity=severity_from_label(_first(attr, "severity", "SEVERITY", "Level", "LEVEL")),
        title=_text(_first(attr, "title", "TITLE", "Name", "NAME", "Label")) or "Hazards Update",
        description=_text(description),
        issued=_first(attr, "pubDate", "CREATED_DATE", "UPDATED_DATE"),
        updated=_first(attr, "UPDATED_DATE", "pubDate", "CREATED_DATE"),
        expires=_first(attr, "EXPIRES", "expires"),
        url=_first(attr, "URL", "Link", "url"),
        confidence="medium",
        geometry=record.get("geom"),
        now=now,
    )


def _from_cap_record(
    record: dict, index: int, descriptor: SourceDescriptor, now: datetime
) -> CanonicalAlert:
    event = _text(record.get("event"))
    return build_alert(
        descriptor,
        alert_id=f"{descriptor.source_id}:{record['identifier']}_{record['index']}",
        hazard_type=event,
        severity=severity_from_cap(record.get("severity"), record.get("urgency")),
        title=_text(_first(record, "headline", "event")) or "Emergency Alert",
        description=_text(_first(record, "description", "instruction")),
        issued=_first(record, "onset", "effective", "sent"),
        updated=record.get("sent"),
        expires=record.get("expires"),
        url=record.get("web"),
        confidence="high",
        geometry=record.get("geom"),
        now=now,
        subcategory=event or None,
    )


def _from_rss_item(
    record: dict, index: int, descriptor: SourceDescriptor, now: datetime
) -> CanonicalAlert:
    title = _text(record.get("title")) or "Unknown Alert"
    guid = _text(record.get("id")) or title
    # feeds such as NSW RFS put the warning level in <category>
    severity = severity_from_label(record.get("category"))
    if severity is Severity.INFORMATION:
        severity = severity_from_label(title)
    return build_alert(
        descriptor,
        alert_id=f"{descriptor.source_id}:{guid}",
        hazard_type=descriptor.subcategory,
        severity=severity,
        title=title,
        description=_text(_first(record, "summary", "content")),
        issued=_first(record, "published", "updated"),
        updated=record.get("updated"),
        expires=None,
        url=record.get("link"),
        confidence="medium",
        geometry=record.get("georss"),
        now=now,
    )


def _point_from_record(record: dict) -> dict | None:
    geom = _valid_geometry(record.get("geometry"))
    if geom is not None:
        return geom
    lat = _first(record, "lat", "latitude")
    lon = _first(record, "lon", "lng", "longitude")
    if lat is None or lon is None:
        return None
    return {"type": "Point", "coordinates": [float(lon), float(lat)]}


def _from_json_record(
    record: dict, index: int, descriptor: SourceDescriptor, now: datetime
) -> CanonicalAlert:
    title = _text(_first(record, "title", "headline", "name")) or "Alert"
    return build_alert(
        descriptor,
        alert_id=f"{descriptor.source_id}:{_text(_first(record, 'id', 'guid')) or index}",
        hazard_type=_text(_first(record, "hazard_type", "event", "type")),
        severity=severity_from_label(
            _first(record, "severity", "alertLevel", "alert_level", "level") or title
        ),
        title=title,
        description=_text(_first(record, "description", "summary", "body")),
        issued=_first(record, "issued_at", "issued", "published", "pubDate", "created", "timestamp"),
        updated=_first(record, "updated_at", "updated", "modified"),
        expires=_first(record, "expires_at", "expires"),
        url=_first(record, "url", "link"),
        confidence="low",
        geometry=_point_from_record(record),
        now=now,
    )


RecordFn = Callable[[dict, int, SourceDescriptor, datetime], CanonicalAlert]

_JSON_FORMATS: dict[str, tuple[Callable[[object], list[dict]], RecordFn]] = {
    "geojson": (parse_geojson, _from_geojson_feature),
    "arcgis": (parse_arcgis_features, _from_arcgis_record),
    "json": (parse_json_records, _from_json_record),
}

_TEXT_FORMATS: dict[str, tuple[Callable[[str], list[dict]], RecordFn]] = {
    "cap": (parse_cap_alerts, _from_cap_record),
    "rss": (parse_rss, _from_rss_item),
    "georss": (parse_rss, _from_rss_item),
    "atom": (parse_rss, _from_rss_item),
}


def _extract_records(payload: RawPayload, stream_type: str) -> tuple[list[dict], RecordFn] | None:
    if isinstance(payload, RawJson) and stream_type in _JSON_FORMATS:
        parse, build = _JSON_FORMATS[stream_type]
        return parse(payload.data), build
    if isinstance(payload, RawText) and stream_type in _TEXT_FORMATS:
        parse, build = _TEXT_FORMATS[stream_type]
        return parse(payload.text), build
    return None


def normalize_alerts(
    payload: RawPayload | None,
    source_id: str,
    descriptor: SourceDescriptor,
    *,
    now: datetime | None = None,
) -> list[CanonicalAlert]:
    if payload is None:
        return []
    now = now or datetime.now(tz=UTC)
    if descriptor.source_id != source_id:
        descriptor = replace(descriptor, source_id=source_id)
    stream_type = (descriptor.stream_type or "geojson").lower()

    try:
        extracted = _extract_records(payload, stream_type)
    except (ET.ParseError, *_RECORD_ERRORS) as e:
        logger.warning("unparseable %s payload from %s: %s", stream_type, source_id, e)
        return []
    if extracted is None:
        logger.debug(
            "no mapping for %s payload of type %s from %s",
            type(payload).__name__,
            stream_type,
            source_id,
        )
        return []

    records, build = extracted
    alerts: list[CanonicalAlert] = []
    for index, record in enumerate(records):
        try:
            alerts.append(build(record, index, descriptor, now))
        except _RECORD_ERRORS as e:
            logger.debug("skipping record %d from %s: %s", index, source_id, e)
    return alerts
