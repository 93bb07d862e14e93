from __future__ import annotations


def parse_json_records(doc: object) -> list[dict]:
    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in (
            "alerts",
            "incidents",
            "warnings",
            "items",
            "events",
            "results",
            "data",
        ):
            value = doc.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
    return []
