from __future__ import annotations

import asyncio

import httpx
import pytest

from blog_worker.services.sync_client import SyncClient


def _client(handler, requests: list[httpx.Request]) -> SyncClient:
    def recording_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    transport = httpx.MockTransport(recording_handler)
    return SyncClient("http://api.local/", "secret-key", client=httpx.AsyncClient(transport=transport))


def test_reconcile_posts_with_api_key() -> None:
    requests: list[httpx.Request] = []
    client = _client(lambda request: httpx.Response(200, json={"completed": True, "missing": 2}), requests)

    report = asyncio.run(client.run_reconciliation())

    assert report == {"completed": True, "missing": 2}
    assert requests[0].method == "POST"
    assert str(requests[0].url) == "http://api.local/sync/reconcile"
    assert requests[0].headers["X-API-Key"] == "secret-key"


def test_scheduled_check_posts_to_scheduled_path() -> None:
    requests: list[httpx.Request] = []
    client = _client(lambda request: httpx.Response(200, json={"submitted": [3]}), requests)

    assert asyncio.run(client.run_scheduled_check()) == {"submitted": [3]}
    assert [(request.method, request.url.path) for request in requests] == [("POST", "/sync/scheduled")]


def test_error_status_raises() -> None:
    requests: list[httpx.Request] = []
    client = _client(lambda request: httpx.Response(503, json={"detail": "runtime not ready"}), requests)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.run_reconciliation())
