from __future__ import annotations


def parse_geojson(doc: object) -> list[dict]:
    if not isinstance(doc, dict):
        return []
    if doc.get("type") == "Feature":
        return [doc]
    if doc.get("type") != "FeatureCollection":
        return []
    features = doc.get("features") or []
    if not isinstance(features, list):
        return []
    return [f for f in features if isinstance(f, dict)]
