"""Tests for the async HTTP metadata client."""

import httpx
import pytest

from marginalia.errors import LookupFailed
from marginalia.metadata_client import MetadataClient


def _client(handler, **kwargs):
    return MetadataClient(
        "https://meta.example.com", "test-key",
        transport=httpx.MockTransport(handler), **kwargs,
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("marginalia.metadata_client.RETRY_BACKOFF_BASE", 0)


class TestHTTPSEnforcement:
    def test_allows_https(self):
        client = MetadataClient("https://meta.example.com/")
        assert client._api_url == "https://meta.example.com"

    def test_allows_localhost(self):
        client = MetadataClient("http://localhost:8000")
        assert client._api_url == "http://localhost:8000"

    def test_allows_127_0_0_1(self):
        client = MetadataClient("http://127.0.0.1:8000")
        assert client._api_url == "http://127.0.0.1:8000"

    def test_rejects_plain_http(self):
        with pytest.raises(ValueError, match="must use HTTPS"):
            MetadataClient("http://meta.example.com", "key")


class TestFetchMetadata:

    @pytest.mark.asyncio
    async def test_returns_metadata(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"metadata": {"name": "alice"}})

        client = _client(handler)
        assert await client.fetch_metadata("npub1abc") == {"name": "alice"}
        assert seen[0].url.path == "/v1/metadata/npub1abc"
        assert seen[0].headers["Authorization"] == "Bearer test-key"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_bare_object_response(self):
        client = _client(lambda r: httpx.Response(200, json={"name": "bob"}))
        assert await client.fetch_metadata("k") == {"name": "bob"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_key_is_path_quoted(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        client = _client(handler)
        await client.fetch_metadata("a/b c")
        assert b"/v1/metadata/a%2Fb" in seen[0].url.raw_path
        await client.aclose()

    @pytest.mark.asyncio
    async def test_not_found_is_none(self):
        client = _client(lambda r: httpx.Response(404))
        assert await client.fetch_metadata("k") is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(403)

        client = _client(handler)
        with pytest.raises(LookupFailed, match="403"):
            await client.fetch_metadata("k")
        assert len(calls) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self):
        responses = [httpx.Response(503), httpx.Response(200, json={"name": "a"})]
        client = _client(lambda r: responses.pop(0))
        assert await client.fetch_metadata("k") == {"name": "a"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        responses = [httpx.Response(429), httpx.Response(200, json={"name": "a"})]
        client = _client(lambda r: responses.pop(0))
        assert await client.fetch_metadata("k") == {"name": "a"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(500)

        client = _client(handler, retries=2)
        with pytest.raises(LookupFailed, match="3 attempts"):
            await client.fetch_metadata("k")
        assert len(calls) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"name": "a"})

        client = _client(handler)
        assert await client.fetch_metadata("k") == {"name": "a"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_json_fails(self):
        client = _client(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(LookupFailed, match="not JSON"):
            await client.fetch_metadata("k")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_object_fails(self):
        client = _client(lambda r: httpx.Response(200, json=["a"]))
        with pytest.raises(LookupFailed, match="not an object"):
            await client.fetch_metadata("k")
        await client.aclose()
