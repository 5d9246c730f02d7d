"""Shared shape of every upstream source adapter.

A source is described by a ``SourceAdapter`` value carrying its endpoint,
query-parameter builder, record transform, limiter and retry policy. The
paging logic below is written once against that shape, so adding a source
means adding a transform and a parameter builder, not a subclass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Mapping

from pipelines.common import DEFAULT_TIMEOUT_SECONDS, fetch_json
from pipelines.errors import (
    ConfigurationError,
    FatalUpstreamError,
    TransientUpstreamError,
    UpstreamError,
    is_transient,
)
from pipelines.model import CanonicalMarketRow
from pipelines.ratelimit import RateLimiter, with_rate_limit, with_retry

logger = logging.getLogger(__name__)

RawRecord = Mapping[str, Any]
ProgressCallback = Callable[..., Any]
FetchFn = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class SourceSettings:
    """Connection and quota settings for one upstream provider."""

    name: str
    base_url: str
    api_key: str | None = None
    max_requests: int = 10
    window_seconds: float = 1.0
    page_size: int = 100
    max_pages: int = 100
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class TransformContext:
    """Per-run inputs a transform needs besides the raw record."""

    org_id: str
    as_of_date: date
    previous_prices: Mapping[str, float] = field(default_factory=dict)
    portal: str | None = None


@dataclass(frozen=True)
class SourceAdapter:
    name: str
    table: str
    endpoint: str
    build_params: Callable[[Mapping[str, Any], int, int], dict[str, Any]]
    transform: Callable[[RawRecord, TransformContext], CanonicalMarketRow]
    record_id: Callable[[RawRecord], str]
    settings: SourceSettings
    limiter: RateLimiter
    fetch: FetchFn = fetch_json

    @property
    def url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/{self.endpoint.lstrip('/')}"

    @property
    def page_size(self) -> int:
        return self.settings.page_size

    def require_credentials(self) -> str:
        if not self.settings.api_key:
            raise ConfigurationError(f"{self.name.upper()}_API_KEY not configured")
        return self.settings.api_key


@dataclass
class PageResult:
    rows: list[RawRecord]
    total: int
    has_more: bool
    error: str | None = None


@dataclass
class FetchResult:
    rows: list[RawRecord]
    error: str | None = None
    pages: int = 0


def notify_progress(callback: ProgressCallback | None, message: str, *args: Any) -> None:
    """Invoke a progress callback; its failures never affect the job."""

    if callback is None:
        return
    try:
        callback(message, *args)
    except Exception:  # noqa: BLE001 - progress reporting is fire-and-forget
        logger.warning("Progress callback raised; ignoring.", exc_info=True)


def _parse_envelope(payload: Any, url: str) -> PageResult:
    if not isinstance(payload, Mapping):
        raise TransientUpstreamError(f"Malformed envelope from {url}: expected an object")
    if payload.get("success") is False:
        raise FatalUpstreamError(
            f"Upstream reported failure from {url}: {payload.get('error') or 'No data returned'}"
        )
    data = payload.get("data")
    if not isinstance(data, list):
        raise TransientUpstreamError(f"Malformed envelope from {url}: 'data' is not a list")

    rows = [record for record in data if isinstance(record, Mapping)]
    try:
        total = int(payload.get("total", len(rows)))
    except (TypeError, ValueError):
        total = len(rows)
    return PageResult(rows=rows, total=total, has_more=bool(payload.get("hasMore", False)))


async def fetch_page(
    adapter: SourceAdapter, query: Mapping[str, Any], *, offset: int = 0
) -> PageResult:
    """Fetch and validate one page; upstream failures are returned, not raised."""

    settings = adapter.settings
    headers = {"Accept": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    params = adapter.build_params(query, offset, settings.page_size)

    async def _request() -> PageResult:
        payload = await adapter.fetch(
            adapter.url, headers=headers, params=params, timeout=settings.timeout
        )
        return _parse_envelope(payload, adapter.url)

    request = with_retry(
        max_retries=settings.max_retries,
        initial_delay=settings.initial_delay,
        max_delay=settings.max_delay,
        should_retry=is_transient,
    )(with_rate_limit(_request, adapter.limiter))

    try:
        return await request()
    except UpstreamError as exc:
        logger.error("%s fetch failed at offset %s: %s", adapter.name, offset, exc)
        return PageResult(rows=[], total=0, has_more=False, error=str(exc))


async def fetch_all(
    adapter: SourceAdapter,
    query: Mapping[str, Any],
    *,
    on_progress: ProgressCallback | None = None,
) -> FetchResult:
    """Page sequentially through ``query`` until the upstream runs dry.

    Pagination stops when a page is short or ``hasMore`` is false, when a page
    fails (rows fetched so far are returned with the error), or when the
    ``max_pages`` safety cap is reached.
    """

    collected: list[RawRecord] = []
    offset = 0
    pages = 0
    page_size = adapter.page_size

    while True:
        if pages >= adapter.settings.max_pages:
            logger.warning(
                "%s safety limit of %s pages reached; stopping pagination.",
                adapter.name,
                adapter.settings.max_pages,
            )
            break

        page = await fetch_page(adapter, query, offset=offset)
        pages += 1
        if page.error:
            return FetchResult(rows=collected, error=page.error, pages=pages)

        collected.extend(page.rows)
        notify_progress(
            on_progress,
            f"[{adapter.name}] Fetched {len(collected)}/{page.total}",
            len(collected),
            page.total,
        )

        if not (page.has_more and len(page.rows) == page_size):
            break
        offset += page_size

    return FetchResult(rows=collected, pages=pages)


__all__ = [
    "SourceSettings",
    "TransformContext",
    "SourceAdapter",
    "PageResult",
    "FetchResult",
    "RawRecord",
    "notify_progress",
    "fetch_page",
    "fetch_all",
]
