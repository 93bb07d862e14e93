import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ingest.fetch import RawJson, RawText
from ingest.registry import SourceDescriptor
from normalize.alerts import SENTINEL_GEOMETRY, build_alert, normalize_alerts, parse_timestamp
from normalize.severity import Severity, rank_alerts, severity_from_cap, severity_from_label


FIXTURES = Path(__file__).resolve().parent / "fixtures"

NOW = datetime(2024, 5, 1, 2, 0, tzinfo=UTC)


def _descriptor(stream_type: str, source_id: str = "src") -> SourceDescriptor:
    return SourceDescriptor(
        source_id=source_id,
        endpoint_url="https://feeds.example/x",
        category="Hazards & Warnings",
        stream_type=stream_type,
        machine_readable=True,
        subcategory="Bushfire",
        jurisdiction_state="NSW",
    )


def _json(name: str) -> RawJson:
    return RawJson(json.loads((FIXTURES / name).read_text(encoding="utf-8")))


def _text(name: str) -> RawText:
    return RawText((FIXTURES / name).read_text(encoding="utf-8"))


def test_geojson_features_normalized() -> None:
    alerts = normalize_alerts(
        _json("vic_emergency.geojson"), "vic", _descriptor("geojson"), now=NOW
    )

    assert [a.id for a in alerts] == ["vic-100", "vic-101", "vic-102"]
    assert [a.severity for a in alerts] == [Severity.WATCH, Severity.ADVICE, Severity.EMERGENCY]
    assert alerts[0].age_s == 7200
    assert alerts[0].source_id == "vic"
    assert alerts[0].state == "NSW"
    assert alerts[0].hazard_type == "Fire"
    assert alerts[0].url == "https://example.vic.gov.au/100"
    assert alerts[0].geometry_is_sentinel is False


def test_missing_geometry_uses_sentinel_point() -> None:
    alerts = normalize_alerts(
        _json("vic_emergency.geojson"), "vic", _descriptor("geojson"), now=NOW
    )

    assert alerts[1].geometry == SENTINEL_GEOMETRY
    assert alerts[1].geometry_is_sentinel is True


def test_cap_alert_normalized_per_info_block() -> None:
    alerts = normalize_alerts(_text("cap_alert.xml"), "qfes", _descriptor("cap"), now=NOW)

    assert [a.id for a in alerts] == ["qfes:QFES-2024-0117_0", "qfes:QFES-2024-0117_1"]
    assert alerts[0].severity is Severity.WARNING
    assert alerts[1].severity is Severity.EMERGENCY
    assert alerts[0].issued_at == "2024-04-30T23:30:00Z"
    assert alerts[0].expires_at == "2024-05-01T08:00:00Z"
    assert alerts[0].confidence == "high"
    assert alerts[0].subcategory == "Bushfire"
    assert alerts[1].geometry["type"] == "Point"


def test_rss_severity_from_category_then_title() -> None:
    alerts = normalize_alerts(
        _text("rfs_incidents.rss.xml"), "rfs", _descriptor("rss"), now=NOW
    )

    assert [a.id for a in alerts] == ["rfs:rfs-1", "rfs:rfs-2"]
    assert alerts[0].severity is Severity.ADVICE
    assert alerts[1].severity is Severity.EMERGENCY
    assert alerts[0].age_s == 7200
    assert alerts[1].age_s == 3600
    assert alerts[1].geometry_is_sentinel is True


def test_arcgis_features_normalized() -> None:
    alerts = normalize_alerts(
        _json("arcgis_hazards.json"), "qld", _descriptor("arcgis"), now=NOW
    )

    assert [a.id for a in alerts] == ["qld:7", "qld:8"]
    assert alerts[0].title == "Hazardous surf"
    assert alerts[0].severity is Severity.WARNING
    assert alerts[0].issued_at == "2024-05-01T00:00:00Z"
    assert alerts[1].severity is Severity.INFORMATION
    assert alerts[1].geometry["type"] == "LineString"


def test_generic_json_records_normalized() -> None:
    payload = RawJson(
        {
            "incidents": [
                {"id": "a1", "title": "Flood Watch", "lat": -30.0, "lon": 150.0},
                {"guid": "a2", "headline": "Road closure", "level": "advice"},
            ]
        }
    )

    alerts = normalize_alerts(payload, "misc", _descriptor("json"), now=NOW)

    assert [a.id for a in alerts] == ["misc:a1", "misc:a2"]
    assert alerts[0].severity is Severity.WATCH
    assert alerts[0].geometry == {"type": "Point", "coordinates": [150.0, -30.0]}
    assert alerts[1].severity is Severity.ADVICE
    assert alerts[1].age_s == 0


@pytest.mark.parametrize(
    ("payload", "stream_type"),
    [
        (RawText("<rss/>"), "geojson"),
        (RawJson({"features": []}), "cap"),
        (RawJson({"type": "FeatureCollection", "features": []}), "shapefile"),
        (RawText("<alert><info>"), "cap"),
        (None, "geojson"),
    ],
)
def test_unmappable_payloads_yield_nothing(payload, stream_type) -> None:
    assert normalize_alerts(payload, "src", _descriptor(stream_type), now=NOW) == []


def test_bad_record_skipped_without_losing_others() -> None:
    payload = RawJson(
        {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "properties": "not-a-mapping"},
                {"type": "Feature", "properties": {"id": "ok", "title": "Fine"}},
            ],
        }
    )

    alerts = normalize_alerts(payload, "src", _descriptor("geojson"), now=NOW)

    assert [a.id for a in alerts] == ["ok"]


OUT_OF_RANGE_TIMES = [
    1e300,
    10**400,
    -5,
    "9" * 40,
    "9" * 5000,
    "9999-12-31T23:00:00-05:00",
    "0001-01-01T00:30:00+01:00",
    "Fri, 31 Dec 9999 23:00:00 -0500",
    "soon",
    float("nan"),
]


@pytest.mark.parametrize("field", ["issued", "updated", "expires"])
@pytest.mark.parametrize("value", OUT_OF_RANGE_TIMES)
def test_unusable_timestamps_do_not_drop_records(field, value) -> None:
    payload = RawJson(
        {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "properties": {"id": "odd", "title": "Odd", field: value}},
                {
                    "type": "Feature",
                    "properties": {"id": "ok", "title": "Fine", "issued": "2024-05-01T01:00:00Z"},
                },
            ],
        }
    )

    alerts = normalize_alerts(payload, "src", _descriptor("geojson"), now=NOW)

    assert [a.id for a in alerts] == ["odd", "ok"]
    odd, ok = alerts
    assert odd.issued_at == "2024-05-01T02:00:00Z"
    assert odd.age_s == 0
    assert odd.expires_at is None
    assert ok.age_s == 3600


@pytest.mark.parametrize("value", OUT_OF_RANGE_TIMES)
def test_parse_timestamp_rejects_unrepresentable_values(value) -> None:
    assert parse_timestamp(value) is None


def test_cap_alert_with_unrepresentable_onset_still_normalizes() -> None:
    xml = (FIXTURES / "cap_alert.xml").read_text(encoding="utf-8").replace(
        "2024-05-01T09:30:00+10:00", "9999-12-31T23:00:00-05:00"
    )

    alerts = normalize_alerts(RawText(xml), "qfes", _descriptor("cap"), now=NOW)

    assert [a.id for a in alerts] == ["qfes:QFES-2024-0117_0", "qfes:QFES-2024-0117_1"]
    # falls back to the alert's sent time
    assert alerts[0].issued_at == "2024-05-01T00:00:00Z"


@pytest.mark.parametrize(
    ("label", "expected"),
    [
        ("Emergency Warning", Severity.EMERGENCY),
        ("Watch and Act", Severity.WATCH),
        ("watch_and_act", Severity.WATCH),
        ("Severe Thunderstorm Warning", Severity.WARNING),
        ("Advice", Severity.ADVICE),
        ("Community Information", Severity.INFORMATION),
        ("Planned Burn", Severity.INFORMATION),
        (None, Severity.INFORMATION),
    ],
)
def test_severity_from_label(label, expected) -> None:
    assert severity_from_label(label) is expected


def test_severity_from_cap() -> None:
    assert severity_from_cap("Moderate", "Immediate") is Severity.EMERGENCY
    assert severity_from_cap("Severe", "Expected") is Severity.WARNING
    assert severity_from_cap("Moderate", "Future") is Severity.ADVICE
    assert severity_from_cap("Unknown", None) is Severity.INFORMATION
    assert [s.rank for s in Severity] == [1, 2, 3, 4, 5]


def test_parse_timestamp_formats() -> None:
    expected = datetime(2024, 5, 1, tzinfo=UTC)
    assert parse_timestamp("2024-05-01T00:00:00Z") == expected
    assert parse_timestamp(1714521600) == expected
    assert parse_timestamp(1714521600000) == expected
    assert parse_timestamp("Wed, 01 May 2024 00:00:00 GMT") == expected
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


def _alert(alert_id: str, severity: Severity, age_s: int):
    return build_alert(
        _descriptor("json"),
        alert_id=alert_id,
        hazard_type="",
        severity=severity,
        title=alert_id,
        description="",
        issued=(NOW - timedelta(seconds=age_s)).isoformat(),
        updated=None,
        expires=None,
        url=None,
        confidence="medium",
        geometry=None,
        now=NOW,
    )


def test_rank_orders_by_severity_then_age_descending() -> None:
    alerts = [
        _alert("info", Severity.INFORMATION, 10),
        _alert("warn-young", Severity.WARNING, 60),
        _alert("emergency", Severity.EMERGENCY, 5),
        _alert("warn-old", Severity.WARNING, 600),
    ]

    ranked = rank_alerts(alerts)

    assert [a.id for a in ranked] == ["emergency", "warn-old", "warn-young", "info"]


def test_rank_is_stable_for_equal_keys() -> None:
    alerts = [_alert(f"a{i}", Severity.ADVICE, 30) for i in range(5)]
    alerts.insert(2, replace(alerts[0], id="b", age_s=30))

    first = rank_alerts(alerts)
    second = rank_alerts(first)

    assert [a.id for a in first] == [a.id for a in alerts]
    assert first == second
