from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Protocol


class Severity(str, Enum):
    EMERGENCY = "emergency"
    WARNING = "warning"
    WATCH = "watch"
    ADVICE = "advice"
    INFORMATION = "information"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS: dict[Severity, int] = {
    Severity.EMERGENCY: 1,
    Severity.WARNING: 2,
    Severity.WATCH: 3,
    Severity.ADVICE: 4,
    Severity.INFORMATION: 5,
}

_LABELS: dict[str, Severity] = {
    "emergency": Severity.EMERGENCY,
    "emergency warning": Severity.EMERGENCY,
    "evacuate": Severity.EMERGENCY,
    "evacuate now": Severity.EMERGENCY,
    "extreme": Severity.EMERGENCY,
    "catastrophic": Severity.EMERGENCY,
    "warning": Severity.WARNING,
    "severe": Severity.WARNING,
    "high": Severity.WARNING,
    "major": Severity.WARNING,
    "watch": Severity.WATCH,
    "watch and act": Severity.WATCH,
    "watch & act": Severity.WATCH,
    "prepare to evacuate": Severity.WATCH,
    "advice": Severity.ADVICE,
    "advisory": Severity.ADVICE,
    "moderate": Severity.ADVICE,
    "information": Severity.INFORMATION,
    "info": Severity.INFORMATION,
    "community information": Severity.INFORMATION,
    "minor": Severity.INFORMATION,
    "low": Severity.INFORMATION,
    "unknown": Severity.INFORMATION,
}

# Checked in order; "watch" precedes "warn" so "Watch and Act" is not a warning.
_KEYWORDS: tuple[tuple[tuple[str, ...], Severity], ...] = (
    (("emergency", "evacuate", "extreme", "catastrophic"), Severity.EMERGENCY),
    (("watch",), Severity.WATCH),
    (("warn", "severe"), Severity.WARNING),
    (("advice", "advis"), Severity.ADVICE),
)


def _clean(label: object) -> str:
    return " ".join(str(label or "").replace("_", " ").lower().split())


def severity_from_label(label: object) -> Severity:
    text = _clean(label)
    if not text:
        return Severity.INFORMATION
    exact = _LABELS.get(text)
    if exact is not None:
        return exact
    for keywords, severity in _KEYWORDS:
        if any(k in text for k in keywords):
            return severity
    return Severity.INFORMATION


def severity_from_cap(severity: object, urgency: object) -> Severity:
    s = _clean(severity)
    if s == "extreme" or _clean(urgency) == "immediate":
        return Severity.EMERGENCY
    if s == "severe":
        return Severity.WARNING
    if s == "moderate":
        return Severity.ADVICE
    return Severity.INFORMATION


class Rankable(Protocol):
    severity_rank: int
    age_s: int


def rank_key(alert: Rankable) -> tuple[int, int]:
    return (alert.severity_rank, -alert.age_s)


def rank_alerts(alerts: Iterable[Rankable]) -> list:
    # sorted() is stable, so equal keys keep their input order
    return sorted(alerts, key=rank_key)
