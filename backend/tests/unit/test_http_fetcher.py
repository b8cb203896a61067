"""
Unit tests for the http_fetcher module.
"""
import os
import time

import httpx
import pytest
import respx

from cancellation import CancellationToken
from errors import CancellationError, NetworkError, UpstreamAuthError, UpstreamFormatError
from http_fetcher import FetchRequest, param_signature


URL = "http://p1.example/player_api.php"


def make_request(**overrides) -> FetchRequest:
    values = dict(
        provider_id="P1",
        media_type="movies",
        endpoint="get_vod_streams",
        url=URL,
        ttl_hours=24,
    )
    values.update(overrides)
    return FetchRequest(**values)


class TestParamSignature:
    def test_empty(self):
        assert param_signature({}) == ""

    def test_sorted_and_safe(self):
        assert param_signature({"b": "x y", "a": 1}) == "a=1_b=x-y"

    def test_long_signature_is_hashed(self):
        signature = param_signature({"q": "x" * 200})
        assert len(signature) == 40


class TestCachePath:
    """Tests for HttpFetcher.cache_path()."""

    @pytest.mark.asyncio
    async def test_layout(self, fetcher, cache_dir):
        req = make_request(params={"category_id": 5})
        path = fetcher.cache_path(req)
        assert path == cache_dir / "P1" / "movies" / "metadata" / "get_vod_streams-category_id=5.json"

    @pytest.mark.asyncio
    async def test_text_uses_m3u8_extension(self, fetcher, cache_dir):
        req = make_request(endpoint="list", response_format="text")
        assert fetcher.cache_path(req) == cache_dir / "P1" / "movies" / "metadata" / "list.m3u8"

    @pytest.mark.asyncio
    async def test_query_does_not_affect_path(self, fetcher):
        plain = make_request()
        with_creds = make_request(query={"username": "u", "password": "p"})
        assert fetcher.cache_path(plain) == fetcher.cache_path(with_creds)


class TestFetchCaching:
    """Tests for cache hits and misses."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_fresh_cache_skips_network(self, fetcher):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json=[{"stream_id": 1}]))

        first = await fetcher.fetch(make_request())
        second = await fetcher.fetch(make_request())

        assert first == second == [{"stream_id": 1}]
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_zero_ttl_always_fetches(self, fetcher):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json=[]))

        await fetcher.fetch(make_request(ttl_hours=0))
        await fetcher.fetch(make_request(ttl_hours=0))

        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_ttl_never_expires(self, fetcher):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json={"info": {}}))
        req = make_request(endpoint="get_series_info", ttl_hours=None, params={"series_id": 7})
        await fetcher.fetch(req)

        path = fetcher.cache_path(req)
        old = time.time() - 365 * 86400
        os.utime(path, (old, old))
        await fetcher.fetch(req)

        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_sends_query_and_writes_cache(self, fetcher):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json=[]))
        req = make_request(query={"username": "u", "password": "p", "action": "get_vod_streams"})

        await fetcher.fetch(req)

        sent = route.calls.last.request.url.params
        assert sent["username"] == "u"
        assert sent["action"] == "get_vod_streams"
        assert fetcher.cache_path(req).read_bytes() == b"[]"

    @pytest.mark.asyncio
    @respx.mock
    async def test_text_response(self, fetcher):
        respx.get("http://p1.example/list").mock(return_value=httpx.Response(200, text="#EXTM3U\n"))
        req = make_request(endpoint="list", url="http://p1.example/list", response_format="text")

        assert await fetcher.fetch(req) == "#EXTM3U\n"


class TestFetchFailures:
    """Tests for retries, errors and stale fallback."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_retries_server_errors(self, fetcher):
        route = respx.get(URL).mock(side_effect=[
            httpx.Response(503),
            httpx.Response(429),
            httpx.Response(200, json=[1]),
        ])

        assert await fetcher.fetch(make_request()) == [1]
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_gives_up_after_attempts(self, fetcher):
        route = respx.get(URL).mock(return_value=httpx.Response(500))

        with pytest.raises(NetworkError) as exc_info:
            await fetcher.fetch(make_request())

        assert exc_info.value.status_code == 500
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error(self, fetcher):
        route = respx.get(URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(NetworkError):
            await fetcher.fetch(make_request())
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_auth_error_not_retried(self, fetcher):
        route = respx.get(URL).mock(return_value=httpx.Response(401))

        with pytest.raises(UpstreamAuthError):
            await fetcher.fetch(make_request())
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_not_found_ignores_stale_cache(self, fetcher):
        req = make_request(ttl_hours=1)
        path = fetcher.cache_path(req)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"[1]")
        old = time.time() - 7200
        os.utime(path, (old, old))
        respx.get(URL).mock(return_value=httpx.Response(404))

        with pytest.raises(NetworkError) as exc_info:
            await fetcher.fetch(req)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    @respx.mock
    async def test_serves_stale_cache_when_upstream_down(self, fetcher):
        req = make_request(ttl_hours=1)
        path = fetcher.cache_path(req)
        path.parent.mkdir(parents=True)
        path.write_bytes(b'[{"stream_id": 9}]')
        old = time.time() - 7200
        os.utime(path, (old, old))
        respx.get(URL).mock(return_value=httpx.Response(502))

        assert await fetcher.fetch(req) == [{"stream_id": 9}]

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json_not_cached(self, fetcher):
        respx.get(URL).mock(return_value=httpx.Response(200, content=b"<html>"))
        req = make_request()

        with pytest.raises(UpstreamFormatError):
            await fetcher.fetch(req)
        assert not fetcher.cache_path(req).exists()

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json_serves_stale_cache(self, fetcher):
        req = make_request(ttl_hours=1)
        path = fetcher.cache_path(req)
        path.parent.mkdir(parents=True)
        path.write_bytes(b'[{"stream_id": 9}]')
        old = time.time() - 7200
        os.utime(path, (old, old))
        respx.get(URL).mock(return_value=httpx.Response(200, content=b"<html>"))

        assert await fetcher.fetch(req) == [{"stream_id": 9}]
        assert path.read_bytes() == b'[{"stream_id": 9}]'

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancelled_token_aborts(self, fetcher):
        token = CancellationToken()
        token.cancel("shutdown")

        with pytest.raises(CancellationError):
            await fetcher.fetch(make_request(), token)
        assert len(respx.calls) == 0


class TestPurgeProvider:
    @pytest.mark.asyncio
    @respx.mock
    async def test_removes_provider_tree(self, fetcher, cache_dir):
        respx.get(URL).mock(return_value=httpx.Response(200, json=[]))
        await fetcher.fetch(make_request())
        assert (cache_dir / "P1").is_dir()

        assert fetcher.purge_provider("P1") is True
        assert not (cache_dir / "P1").exists()
        assert fetcher.purge_provider("P1") is False
