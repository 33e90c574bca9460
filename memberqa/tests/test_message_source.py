"""Tests for the paginated HTTP message source."""

import httpx
import pytest

from memberqa.common.config import SourceConfig
from memberqa.common.message_source import HttpMessageSource, SourceUnavailable

BASE_URL = "http://messages.test"


def _items(start, count):
    return [
        {
            "id": f"m{i}",
            "user_id": f"u{i % 3}",
            "user_name": ["Amira Khan", "Vikram Desai", "Layla Kawaguchi"][i % 3],
            "timestamp": f"2025-01-01T00:{i % 60:02d}:00Z",
            "message": f"message number {i}",
        }
        for i in range(start, start + count)
    ]


def _paged_handler(total, requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        skip = int(request.url.params["skip"])
        limit = int(request.url.params["limit"])
        count = max(0, min(limit, total - skip))
        return httpx.Response(200, json={"total": total, "items": _items(skip, count)})
    return handler


def _source(handler, **config_kwargs):
    config = SourceConfig(base_url=BASE_URL, retry_delay=0.0, **config_kwargs)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMessageSource(config, client=client)


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_paginates_until_total(self):
        requests = []
        source = _source(_paged_handler(2500, requests), batch_size=1000)

        messages = await source.fetch_all()

        assert len(messages) == 2500
        assert [int(r.url.params["skip"]) for r in requests] == [0, 1000, 2000]
        assert all(r.url.path == "/messages/" for r in requests)

    @pytest.mark.asyncio
    async def test_maps_wire_fields(self):
        source = _source(_paged_handler(1, []))

        messages = await source.fetch_all()

        assert messages[0].id == "m0"
        assert messages[0].user_name == "Amira Khan"
        assert messages[0].text == "message number 0"

    @pytest.mark.asyncio
    async def test_stops_on_empty_page(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.params["skip"] == "0":
                return httpx.Response(200, json={"total": 9999, "items": _items(0, 10)})
            return httpx.Response(200, json={"total": 9999, "items": []})

        source = _source(handler, batch_size=10)
        messages = await source.fetch_all()

        assert len(messages) == 10
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_empty_corpus(self):
        source = _source(_paged_handler(0, []))
        assert await source.fetch_all() == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"total": 2, "items": _items(0, 2)})

        source = _source(handler, max_retries=3)
        messages = await source.fetch_all()

        assert len(messages) == 2
        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            return httpx.Response(500)

        source = _source(handler, max_retries=3)

        with pytest.raises(SourceUnavailable):
            await source.fetch_all()
        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        source = _source(handler, max_retries=2)

        with pytest.raises(SourceUnavailable, match="connection refused"):
            await source.fetch_all()

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        def handler(request):
            return httpx.Response(200, json=["not", "a", "page"])

        source = _source(handler, max_retries=1)

        with pytest.raises(SourceUnavailable):
            await source.fetch_all()


class TestPing:
    @pytest.mark.asyncio
    async def test_ping_ok(self):
        source = _source(_paged_handler(5, []))
        assert await source.ping() is True

    @pytest.mark.asyncio
    async def test_ping_server_error(self):
        source = _source(lambda request: httpx.Response(500))
        assert await source.ping() is False

    @pytest.mark.asyncio
    async def test_ping_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        source = _source(handler)
        assert await source.ping() is False


class TestClose:
    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(_paged_handler(1, [])))
        source = HttpMessageSource(SourceConfig(base_url=BASE_URL), client=client)

        await source.close()

        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        source = HttpMessageSource(SourceConfig(base_url=BASE_URL))
        client = source._ensure_client()

        await source.close()

        assert client.is_closed
