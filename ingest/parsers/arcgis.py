from __future__ import annotations


def _geometry(geom: object) -> dict | None:
    if not isinstance(geom, dict):
        return None
    x = geom.get("x")
    y = geom.get("y")
    if isinstance(x, (int, float)) and isinstance(y, (int, float)):
        return {"type": "Point", "coordinates": [float(x), float(y)]}
    rings = geom.get("rings")
    if isinstance(rings, list) and rings:
        return {"type": "Polygon", "coordinates": rings}
    paths = geom.get("paths")
    if isinstance(paths, list) and paths:
        if len(paths) == 1:
            return {"type": "LineString", "coordinates": paths[0]}
        return {"type": "MultiLineString", "coordinates": paths}
    return None


def parse_arcgis_features(doc: object) -> list[dict]:
    if not isinstance(doc, dict):
        return []
    features = doc.get("features")
    if not isinstance(features, list):
        return []

    records: list[dict] = []
    for feature in features:
        if not isinstance(feature, dict):
            continue
        attributes = feature.get("attributes")
        records.append(
            {
                "attributes": attributes if isinstance(attributes, dict) else {},
                "geom": _geometry(feature.get("geometry")),
            }
        )
    return records
