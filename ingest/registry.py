from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml


ALERT_CATEGORIES = frozenset({"Alerts", "Hazards", "Hazards & Warnings", "Weather"})

_ICAO24_RE = re.compile(r"^[0-9a-f]{6}$")
_NAME_HEX_RE = re.compile(r"\(([0-9A-Fa-f]{6})\)")


@dataclass(frozen=True)
class SourceDescriptor:
    source_id: str
    endpoint_url: str
    category: str
    stream_type: str
    machine_readable: bool
    name: str = ""
    subcategory: str = ""
    tags: tuple[str, ...] = ()
    jurisdiction_state: str = "AUS"

    @property
    def is_alert_source(self) -> bool:
        return (
            self.machine_readable
            and bool(self.endpoint_url)
            and self.category in ALERT_CATEGORIES
        )


@dataclass(frozen=True)
class WatchListEntry:
    icao24: str
    registration: str | None = None
    operator: str | None = None
    role: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Registry:
    sources: tuple[SourceDescriptor, ...] = field(default_factory=tuple)
    watch_list: tuple[WatchListEntry, ...] = field(default_factory=tuple)

    def alert_sources(self) -> list[SourceDescriptor]:
        return [s for s in self.sources if s.is_alert_source]


def _optional_str(value: object) -> str | None:
    text = str(value or "").strip()
    return text or None


def _source_from_entry(entry: dict, path: Path) -> SourceDescriptor:
    if "id" not in entry:
        raise ValueError(f"source without id in: {path}")
    stream_type = str(entry.get("type") or "geojson").strip().lower()
    if stream_type == "unknown":
        stream_type = "geojson"
    return SourceDescriptor(
        source_id=str(entry["id"]),
        endpoint_url=str(entry.get("url") or ""),
        category=str(entry.get("category") or "Alerts"),
        stream_type=stream_type,
        machine_readable=bool(entry.get("machine_readable", True)),
        name=str(entry.get("name") or entry["id"]),
        subcategory=str(entry.get("subcategory") or ""),
        tags=tuple(str(t) for t in (entry.get("tags") or [])),
        jurisdiction_state=str(entry.get("state") or "AUS"),
    )


def _aircraft_from_entry(entry: dict, path: Path) -> WatchListEntry:
    icao24 = str(entry.get("icao24") or "").strip().lower()
    name = _optional_str(entry.get("name"))
    if not icao24 and name:
        match = _NAME_HEX_RE.search(name)
        if match is not None:
            icao24 = match.group(1).lower()
    if not _ICAO24_RE.match(icao24):
        raise ValueError(f"invalid icao24 {icao24!r} in: {path}")
    return WatchListEntry(
        icao24=icao24,
        registration=_optional_str(entry.get("registration")),
        operator=_optional_str(entry.get("operator")),
        role=_optional_str(entry.get("role")),
        name=name,
    )


def load_registry(path: Path) -> Registry:
    if not path.exists():
        return Registry()

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return Registry()
    if not isinstance(raw, dict):
        raise ValueError(f"invalid registry: {path}")

    sources: list[SourceDescriptor] = []
    for entry in raw.get("sources") or []:
        if not isinstance(entry, dict):
            raise ValueError(f"invalid source entry in: {path}")
        sources.append(_source_from_entry(entry, path))

    watch_list: list[WatchListEntry] = []
    seen: set[str] = set()
    for entry in raw.get("aircraft") or []:
        if not isinstance(entry, dict):
            raise ValueError(f"invalid aircraft entry in: {path}")
        aircraft = _aircraft_from_entry(entry, path)
        if aircraft.icao24 in seen:
            continue
        seen.add(aircraft.icao24)
        watch_list.append(aircraft)

    return Registry(sources=tuple(sources), watch_list=tuple(watch_list))
