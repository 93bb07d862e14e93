from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def compute_backoff_seconds(base_interval_seconds: float, consecutive_failures: int) -> float:
    if consecutive_failures <= 0:
        return base_interval_seconds
    return min(60 * 60, base_interval_seconds * (2**consecutive_failures))


@dataclass
class SourceHealth:
    source_id: str
    success_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    last_fetch_at: str | None = None
    last_success_at: str | None = None
    last_error_at: str | None = None
    last_error: str | None = None
    last_status_code: int | None = None
    last_fetch_ms: int | None = None
    retry_after_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class SourceHealthRegistry:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._sources: dict[str, SourceHealth] = {}

    def _get(self, source_id: str) -> SourceHealth:
        health = self._sources.get(source_id)
        if health is None:
            health = SourceHealth(source_id=source_id)
            self._sources[source_id] = health
        return health

    def record_fetch_success(
        self,
        *,
        source_id: str,
        fetch_ms: int,
        status_code: int | None = 200,
    ) -> None:
        now_iso = _utc_now_iso()
        with self.lock:
            health = self._get(source_id)
            health.last_fetch_at = now_iso
            health.last_success_at = now_iso
            health.last_status_code = status_code
            health.last_fetch_ms = fetch_ms
            health.consecutive_failures = 0
            health.last_error = None
            health.last_error_at = None
            health.retry_after_at = None
            health.success_count += 1

    def record_fetch_error(
        self,
        *,
        source_id: str,
        error: str,
        status_code: int | None,
        fetch_ms: int | None,
        base_interval_seconds: float,
    ) -> float:
        now = datetime.now(tz=UTC)
        now_iso = now.isoformat().replace("+00:00", "Z")
        with self.lock:
            health = self._get(source_id)
            health.consecutive_failures += 1
            backoff_seconds = compute_backoff_seconds(
                base_interval_seconds, health.consecutive_failures
            )
            health.last_fetch_at = now_iso
            health.last_error_at = now_iso
            health.last_error = error
            if status_code is not None:
                health.last_status_code = status_code
            if fetch_ms is not None:
                health.last_fetch_ms = fetch_ms
            health.error_count += 1
            health.retry_after_at = (
                (now + timedelta(seconds=backoff_seconds))
                .isoformat()
                .replace("+00:00", "Z")
            )
        return backoff_seconds

    def is_backing_off(self, source_id: str, *, now: datetime | None = None) -> bool:
        with self.lock:
            health = self._sources.get(source_id)
            retry_after_at = health.retry_after_at if health is not None else None
        if retry_after_at is None:
            return False
        now = now or datetime.now(tz=UTC)
        return now < datetime.fromisoformat(retry_after_at.replace("Z", "+00:00"))

    def get(self, source_id: str) -> SourceHealth | None:
        with self.lock:
            health = self._sources.get(source_id)
            return SourceHealth(**asdict(health)) if health is not None else None

    def snapshot(self) -> list[dict]:
        with self.lock:
            return [h.to_dict() for h in sorted(self._sources.values(), key=lambda h: h.source_id)]
