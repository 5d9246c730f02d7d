import asyncio

import httpx
import pytest

from pipelines.common import coerce_float, fetch_json, sqm_to_sqft
from pipelines.errors import FatalUpstreamError, TransientUpstreamError

URL = "https://example.test/dld/transactions"


def _transport(status: int, *, body: bytes = b"{}", content_type: str = "application/json"):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=body, headers={"content-type": content_type})

    return httpx.MockTransport(handler)


def _fetch(transport, **kwargs):
    return asyncio.run(fetch_json(URL, transport=transport, **kwargs))


def test_fetch_json_returns_payload_and_sends_params():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"success": True, "data": [{"id": 1}]})

    payload = _fetch(
        httpx.MockTransport(handler),
        params={"limit": 10, "offset": 0},
        headers={"Authorization": "Bearer k"},
    )

    assert payload == {"success": True, "data": [{"id": 1}]}
    assert seen == {"params": {"limit": "10", "offset": "0"}, "auth": "Bearer k"}


@pytest.mark.parametrize("status", [500, 503, 408, 429])
def test_retryable_statuses_are_transient(status):
    with pytest.raises(TransientUpstreamError) as excinfo:
        _fetch(_transport(status, body=b"busy", content_type="text/plain"))

    assert excinfo.value.status_code == status


@pytest.mark.parametrize("status", [400, 401, 403, 404])
def test_client_errors_are_fatal(status):
    with pytest.raises(FatalUpstreamError) as excinfo:
        _fetch(_transport(status, body=b'{"error": "nope"}'))

    assert excinfo.value.status_code == status


def test_network_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientUpstreamError, match="Network error"):
        _fetch(httpx.MockTransport(handler))


def test_non_json_body_is_transient():
    with pytest.raises(TransientUpstreamError, match="Malformed JSON"):
        _fetch(_transport(200, body=b"<html>gateway</html>", content_type="text/html"))


def test_numeric_helpers():
    assert sqm_to_sqft(100) == pytest.approx(1076.39)
    assert coerce_float("1,250,000") == pytest.approx(1_250_000.0)
    assert coerce_float("n/a") is None
    assert coerce_float(None) is None
