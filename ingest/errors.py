from __future__ import annotations

from dataclasses import dataclass


class AggregatorError(Exception):
    pass


class SourceError(AggregatorError):
    kind = "source_error"

    def __init__(self, message: str, *, source_id: str = "") -> None:
        self.source_id = source_id
        super().__init__(message)


class SourceFetchError(SourceError):
    kind = "fetch_error"

    def __init__(
        self,
        message: str,
        *,
        source_id: str = "",
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, source_id=source_id)


class SourceTimeoutError(SourceError):
    kind = "timeout"


class SourceBackoffError(SourceError):
    """Skipped because the source is still inside its retry window."""

    kind = "backoff"


class SourceParseError(SourceError):
    """Body could not be decoded as declared; callers fall back to raw text."""

    kind = "parse_error"


class CacheMissError(AggregatorError):
    """Producer failed and there was no servable value for the key."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"{key}: {message}")


@dataclass(frozen=True)
class SourceFailure:
    source_id: str
    kind: str
    message: str

    @classmethod
    def from_exception(cls, source_id: str, exc: BaseException) -> SourceFailure:
        cause = exc
        if isinstance(exc, CacheMissError) and exc.__cause__ is not None:
            cause = exc.__cause__
        kind = getattr(cause, "kind", None) or cause.__class__.__name__
        return cls(source_id=source_id, kind=str(kind), message=str(cause))

    def to_dict(self) -> dict:
        return {"source_id": self.source_id, "kind": self.kind, "message": self.message}


class PartialAggregationFailure(AggregatorError):
    """Some sources failed. Attached to snapshots as diagnostics, never raised."""

    def __init__(self, failures: list[SourceFailure], *, total: int) -> None:
        self.failures = list(failures)
        self.total = total
        super().__init__(f"{len(self.failures)} of {total} sources failed")
