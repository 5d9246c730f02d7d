"""Shared utilities for retrieving and normalizing external API responses."""

from __future__ import annotations

import re
from typing import Any, Mapping

import httpx

from pipelines.errors import FatalUpstreamError, TransientUpstreamError

DEFAULT_TIMEOUT_SECONDS = 30.0
SQM_TO_SQFT = 10.7639

Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None

_RETRYABLE_STATUS = {408, 425, 429}


async def fetch_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Any:
    """Execute a GET request and return the decoded JSON payload.

    Failures are translated into pipeline error kinds so retry policies can be
    expressed as a predicate over them: connection problems, timeouts, 5xx and
    rate-limit responses become ``TransientUpstreamError``; any other non-2xx
    status becomes ``FatalUpstreamError``. A body that is not JSON is treated as
    transient because upstream gateways occasionally return HTML error pages.
    """

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.get(url, headers=headers, params=params)
    except httpx.TransportError as exc:
        raise TransientUpstreamError(f"Network error calling {url}: {exc}") from exc

    status = response.status_code
    if status >= 500 or status in _RETRYABLE_STATUS:
        raise TransientUpstreamError(
            f"Upstream error {status} from {url}: {response.text[:200]}",
            status_code=status,
        )
    if status >= 400:
        raise FatalUpstreamError(
            f"Upstream rejected request {status} from {url}: {response.text[:200]}",
            status_code=status,
        )

    try:
        return response.json()
    except ValueError as exc:
        raise TransientUpstreamError(
            f"Malformed JSON body from {url}", status_code=status
        ) from exc


def sqm_to_sqft(sqm: float) -> float:
    return sqm * SQM_TO_SQFT


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.replace(",", "").strip()
        if not stripped:
            return None
        try:
            return float(stripped)
        except ValueError:
            return None
    return None


def first_text(record: Mapping[str, Any], *keys: str) -> str:
    """Return the first non-blank string among ``keys``."""

    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def iso_date(value: Any) -> str | None:
    """Trim an ISO date or datetime string to ``YYYY-MM-DD``."""

    if not isinstance(value, str):
        return None
    match = _ISO_DATE.match(value.strip())
    return match.group(0) if match else None


__all__ = [
    "fetch_json",
    "DEFAULT_TIMEOUT_SECONDS",
    "SQM_TO_SQFT",
    "sqm_to_sqft",
    "coerce_float",
    "first_text",
    "iso_date",
]
