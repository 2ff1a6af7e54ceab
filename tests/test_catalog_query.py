"""Tests for the remote catalog-search client."""

from __future__ import annotations

import json

import httpx
import pytest

from mediamesh.errors import StorageError
from mediamesh.models import SmartCriteria
from mediamesh.services.catalog_query import HttpCatalogQuery


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_search_retries_server_errors() -> None:
    """5xx responses are retried before the result is accepted."""

    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"ids": [5, "7", "junk", 9]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://search.example.com") as http_client:
        query = HttpCatalogQuery(http_client, retry_delay=0)
        ids = await query.search(
            SmartCriteria(genres=["Drama"], year_min=1990), limit=2
        )

    assert ids == [5, 7]
    assert len(requests) == 3
    assert requests[0].url.path == "/search"
    body = json.loads(requests[0].content)
    assert body["genres"] == ["drama"]
    assert body["year_min"] == 1990
    assert body["limit"] == 2
    assert "rating_min" not in body


@pytest.mark.anyio("asyncio")
async def test_search_accepts_item_objects() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": [{"id": 3}, {"id": 1}, {"title": "no id"}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://search.example.com") as http_client:
        ids = await HttpCatalogQuery(http_client).search(SmartCriteria(), limit=10)

    assert ids == [3, 1]


@pytest.mark.anyio("asyncio")
async def test_search_gives_up_after_retries() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("refused", request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://search.example.com") as http_client:
        query = HttpCatalogQuery(http_client, max_retries=2, retry_delay=0)
        with pytest.raises(StorageError, match="unavailable"):
            await query.search(SmartCriteria(), limit=10)

    assert calls == 3


@pytest.mark.anyio("asyncio")
async def test_search_does_not_retry_client_errors() -> None:
    calls = 0

    def handler(_: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400, json={"error": "bad criteria"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://search.example.com") as http_client:
        query = HttpCatalogQuery(http_client, retry_delay=0)
        with pytest.raises(StorageError, match="rejected"):
            await query.search(SmartCriteria(), limit=10)

    assert calls == 1
