from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace

from aviation.tracks import AircraftTrack, Provenance
from ingest.registry import WatchListEntry

DEFAULT_MISSING_THRESHOLD_S = 15.0

MergedTrackSet = dict[str, AircraftTrack]


def _freshest_by_id(
    tracks: Iterable[AircraftTrack], wanted: set[str] | dict[str, WatchListEntry]
) -> dict[str, AircraftTrack]:
    best: dict[str, AircraftTrack] = {}
    for track in tracks:
        key = track.icao24.lower()
        if key not in wanted:
            continue
        current = best.get(key)
        if current is None or track.age_s < current.age_s:
            best[key] = track
    return best


def _watch_index(watch_list: Sequence[WatchListEntry]) -> dict[str, WatchListEntry]:
    index: dict[str, WatchListEntry] = {}
    for entry in watch_list:
        index.setdefault(entry.icao24.lower(), entry)
    return index


def identify_missing(
    watch_list: Sequence[WatchListEntry],
    primary: Iterable[AircraftTrack],
    missing_threshold_s: float = DEFAULT_MISSING_THRESHOLD_S,
) -> list[str]:
    watch = _watch_index(watch_list)
    found = _freshest_by_id(primary, watch)
    return [
        key
        for key in watch
        if key not in found or found[key].age_s > missing_threshold_s
    ]


def _enrich(track: AircraftTrack, entry: WatchListEntry) -> AircraftTrack:
    return replace(
        track,
        registration=track.registration or entry.registration,
        operator=track.operator or entry.operator,
        role=track.role or entry.role,
    )


def merge_tracks(
    primary: Iterable[AircraftTrack],
    fallback: Iterable[AircraftTrack],
    watch_list: Sequence[WatchListEntry],
    missing_threshold_s: float = DEFAULT_MISSING_THRESHOLD_S,
) -> MergedTrackSet:
    watch = _watch_index(watch_list)
    resolved: dict[str, AircraftTrack] = {
        key: replace(track, source_provenance=Provenance.PRIMARY)
        for key, track in _freshest_by_id(primary, watch).items()
    }

    missing = [
        key
        for key in watch
        if key not in resolved or resolved[key].age_s > missing_threshold_s
    ]
    if missing:
        candidates = _freshest_by_id(fallback, set(missing))
        for key in missing:
            replacement = candidates.get(key)
            if replacement is None:
                continue
            # a stale primary fix only gives way to a fresh fallback fix
            if key in resolved and replacement.age_s > missing_threshold_s:
                continue
            resolved[key] = replace(replacement, source_provenance=Provenance.FALLBACK)

    return {
        key: _enrich(resolved[key], entry)
        for key, entry in watch.items()
        if key in resolved
    }
