from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar, Union

import httpx

from ingest.errors import SourceError, SourceFetchError, SourceParseError, SourceTimeoutError
from ingest.registry import SourceDescriptor

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ACCEPT = "application/json, application/xml, text/xml, */*"


@dataclass(frozen=True)
class RawJson:
    data: Any

    def to_dict(self) -> dict:
        return {"kind": "json", "body": self.data}


@dataclass(frozen=True)
class RawText:
    text: str

    def to_dict(self) -> dict:
        return {"kind": "text", "body": self.text}


RawPayload = Union[RawJson, RawText]


def raw_payload_from_dict(doc: dict | None) -> RawPayload | None:
    if not isinstance(doc, dict):
        return None
    if doc.get("kind") == "json":
        return RawJson(doc.get("body"))
    if doc.get("kind") == "text":
        return RawText(str(doc.get("body") or ""))
    return None


@dataclass(frozen=True)
class SourceResult:
    source_id: str
    payload: RawPayload | None = None
    error: SourceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _parse_json(text: str, *, source_id: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as e:
        raise SourceParseError(f"invalid json: {e}", source_id=source_id) from e


def classify_body(
    text: str, content_type: str | None, *, source_id: str = ""
) -> RawPayload | None:
    stripped = text.strip()
    if not stripped:
        return None
    looks_json = stripped.startswith("{") or stripped.startswith("[")
    if "json" in (content_type or "").lower() or looks_json:
        try:
            return RawJson(_parse_json(stripped, source_id=source_id))
        except SourceParseError as e:
            logger.debug("%s", e)
            return RawText(text)
    return RawText(text)


async def fetch_source(
    client: httpx.AsyncClient,
    descriptor: SourceDescriptor,
    *,
    timeout_s: float,
    user_agent: str,
    auth: httpx.Auth | None = None,
) -> RawPayload | None:
    source_id = descriptor.source_id
    headers = {"User-Agent": user_agent, "Accept": ACCEPT}
    timeout = httpx.Timeout(timeout_s, connect=min(5.0, timeout_s))
    started = time.perf_counter()
    try:
        response = await asyncio.wait_for(
            client.get(
                descriptor.endpoint_url, headers=headers, timeout=timeout, auth=auth
            ),
            timeout=timeout_s,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise SourceTimeoutError(
            f"timed out after {timeout_s:.1f}s", source_id=source_id
        ) from e
    except (httpx.RequestError, httpx.InvalidURL) as e:
        raise SourceFetchError(
            f"request_error:{e.__class__.__name__}", source_id=source_id
        ) from e

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    if not response.is_success:
        raise SourceFetchError(
            f"http_{response.status_code}",
            source_id=source_id,
            status_code=response.status_code,
        )

    payload = classify_body(
        response.text, response.headers.get("Content-Type"), source_id=source_id
    )
    logger.debug(
        "fetched %s status=%s in %dms (%s)",
        source_id,
        response.status_code,
        elapsed_ms,
        type(payload).__name__,
    )
    return payload


async def fan_out(
    items: Sequence[T], job: Callable[[T], Awaitable[R]]
) -> list[tuple[T, R | BaseException]]:
    results = await asyncio.gather(*(job(item) for item in items), return_exceptions=True)
    settled: list[tuple[T, R | BaseException]] = []
    for item, result in zip(items, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        settled.append((item, result))
    return settled


def cap_sources(
    descriptors: Sequence[SourceDescriptor], max_sources: int
) -> list[SourceDescriptor]:
    capped = list(descriptors[: max(0, max_sources)])
    if len(descriptors) > len(capped):
        logger.info(
            "dropping %d sources over the cap of %d",
            len(descriptors) - len(capped),
            max_sources,
        )
    return capped


async def fetch_sources(
    client: httpx.AsyncClient,
    descriptors: Sequence[SourceDescriptor],
    *,
    max_sources: int,
    timeout_s: float,
    user_agent: str,
) -> list[SourceResult]:
    async def job(descriptor: SourceDescriptor) -> RawPayload | None:
        return await fetch_source(
            client, descriptor, timeout_s=timeout_s, user_agent=user_agent
        )

    results: list[SourceResult] = []
    for descriptor, outcome in await fan_out(cap_sources(descriptors, max_sources), job):
        if isinstance(outcome, Exception):
            error = (
                outcome
                if isinstance(outcome, SourceError)
                else SourceFetchError(str(outcome), source_id=descriptor.source_id)
            )
            logger.warning("source %s failed: %s", descriptor.source_id, error)
            results.append(SourceResult(descriptor.source_id, error=error))
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append(SourceResult(descriptor.source_id, payload=outcome))
    return results
