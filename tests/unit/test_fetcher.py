"""Unit tests for routethru.fetcher."""

from __future__ import annotations

import gzip
import socket
import ssl

import httpx
import pytest
import respx

from routethru.codec import TargetReference
from routethru.config import FetcherSettings
from routethru.errors import DecodeError, ErrorCode, FetchError
from routethru.fetcher import (
    Fetcher,
    build_http_client,
    build_upstream_headers,
    classify_error,
)

PAGE_URL = "https://example.com/dir/page.html"
TARGET = TargetReference.from_url(PAGE_URL)

# ---------------------------------------------------------------------------
# build_http_client / build_upstream_headers
# ---------------------------------------------------------------------------


class TestBuildHttpClient:
    async def test_redirects_not_followed(self) -> None:
        client = build_http_client()
        try:
            assert client.follow_redirects is False
        finally:
            await client.aclose()

    async def test_timeout_from_settings(self) -> None:
        client = build_http_client(FetcherSettings(timeout_seconds=7, connect_timeout_seconds=2))
        try:
            assert client.timeout.read == 7
            assert client.timeout.connect == 2
        finally:
            await client.aclose()


class TestBuildUpstreamHeaders:
    def test_defaults_when_client_sends_nothing(self) -> None:
        settings = FetcherSettings()
        headers = build_upstream_headers(None, settings)
        assert headers["User-Agent"] == settings.default_user_agent
        assert headers["Accept-Language"] == "en-US,en;q=0.9"
        assert headers["Accept"] == "*/*"

    def test_forwards_client_values(self) -> None:
        inbound = {
            "User-Agent": "TestBrowser/1.0",
            "accept-language": "de-DE",
            "Accept": "text/html",
        }
        headers = build_upstream_headers(inbound, FetcherSettings())
        assert headers["User-Agent"] == "TestBrowser/1.0"
        assert headers["Accept-Language"] == "de-DE"
        assert headers["Accept"] == "text/html"

    def test_never_forwards_host_or_credentials(self) -> None:
        inbound = {"Host": "localhost:3000", "Cookie": "a=b", "Authorization": "Bearer x"}
        headers = {key.lower() for key in build_upstream_headers(inbound, FetcherSettings())}
        assert headers.isdisjoint({"host", "cookie", "authorization"})


# ---------------------------------------------------------------------------
# classify_error
# ---------------------------------------------------------------------------


class TestClassifyError:
    def test_dns_failure_message(self) -> None:
        error = classify_error(httpx.ConnectError("[Errno -2] Name or service not known"), TARGET)
        assert error.code == ErrorCode.HOST_UNREACHABLE
        assert error.status_code == 502
        assert "example.com" in error.message
        assert error.host == "example.com"

    def test_dns_failure_in_cause_chain(self) -> None:
        exc = httpx.ConnectError("connect failed")
        exc.__cause__ = socket.gaierror(-3, "lookup failed")
        assert classify_error(exc, TARGET).code == ErrorCode.HOST_UNREACHABLE

    def test_tls_failure(self) -> None:
        exc = httpx.ConnectError("handshake failed")
        exc.__cause__ = ssl.SSLError("bad certificate")
        assert classify_error(exc, TARGET).code == ErrorCode.TLS_ERROR

    def test_connection_refused(self) -> None:
        error = classify_error(httpx.ConnectError("[Errno 111] Connection refused"), TARGET)
        assert error.code == ErrorCode.CONNECTION_REFUSED
        assert error.status_code == 502

    def test_timeout(self) -> None:
        error = classify_error(httpx.ReadTimeout("timed out"), TARGET)
        assert error.code == ErrorCode.TIMEOUT
        assert error.status_code == 504

    def test_other_transport_error(self) -> None:
        error = classify_error(httpx.RemoteProtocolError("peer closed connection"), TARGET)
        assert error.code == ErrorCode.UPSTREAM_ERROR
        assert error.status_code == 502


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class TestFetcher:
    async def test_successful_fetch(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(
                return_value=httpx.Response(
                    200, text="<p>hello</p>", headers={"content-type": "text/html; charset=utf-8"}
                )
            )
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).fetch(TARGET)
        assert result.status_code == 200
        assert result.body == b"<p>hello</p>"
        assert result.content_type == "text/html; charset=utf-8"
        assert result.url == PAGE_URL

    async def test_request_headers(self) -> None:
        with respx.mock:
            route = respx.get(PAGE_URL).mock(return_value=httpx.Response(200))
            async with httpx.AsyncClient() as client:
                await Fetcher(client).fetch(
                    TARGET, {"user-agent": "TestBrowser/1.0", "cookie": "session=1"}
                )
        sent = route.calls.last.request.headers
        assert sent["user-agent"] == "TestBrowser/1.0"
        assert sent["host"] == "example.com"
        assert "cookie" not in sent

    async def test_gzip_body_decoded_and_header_dropped(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(
                return_value=httpx.Response(
                    200,
                    content=gzip.compress(b"compressed body"),
                    headers={"content-encoding": "gzip", "content-type": "text/plain"},
                )
            )
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).fetch(TARGET)
        assert result.body == b"compressed body"
        names = {name for name, _ in result.headers}
        assert "content-encoding" not in names
        assert "content-length" not in names

    async def test_redirect_intercepted_and_location_rewritten(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(
                return_value=httpx.Response(302, headers={"location": "/next?x=1"})
            )
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).fetch(TARGET)
            assert respx.calls.call_count == 1
        assert result.status_code == 302
        assert result.is_redirect
        assert dict(result.headers)["location"] == "/https%3A%2F%2Fexample.com%2Fnext%3Fx%3D1"

    async def test_error_status_passed_through(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(return_value=httpx.Response(404, text="gone"))
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).fetch(TARGET)
        assert result.status_code == 404
        assert result.body == b"gone"

    async def test_dns_failure_raises_fetch_error(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(
                side_effect=httpx.ConnectError("[Errno -2] Name or service not known")
            )
            async with httpx.AsyncClient() as client:
                with pytest.raises(FetchError) as exc_info:
                    await Fetcher(client).fetch(TARGET)
        assert exc_info.value.code == ErrorCode.HOST_UNREACHABLE
        assert "example.com" in exc_info.value.to_text()

    async def test_timeout_raises_fetch_error(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))
            async with httpx.AsyncClient() as client:
                with pytest.raises(FetchError) as exc_info:
                    await Fetcher(client).fetch(TARGET)
        assert exc_info.value.code == ErrorCode.TIMEOUT
        assert exc_info.value.status_code == 504

    async def test_url_rejected_by_httpx_is_decode_error(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(side_effect=httpx.InvalidURL("Invalid IDNA hostname"))
            async with httpx.AsyncClient() as client:
                with pytest.raises(DecodeError) as exc_info:
                    await Fetcher(client).fetch(TARGET)
        assert exc_info.value.code == ErrorCode.DECODE_MALFORMED
        assert exc_info.value.status_code == 400

    async def test_idna_failure_is_decode_error(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(side_effect=UnicodeError("Malformed A-label"))
            async with httpx.AsyncClient() as client:
                with pytest.raises(DecodeError) as exc_info:
                    await Fetcher(client).fetch(TARGET)
        assert exc_info.value.code == ErrorCode.DECODE_MALFORMED
        assert "Malformed A-label" in exc_info.value.to_text()

    async def test_open_streams_body(self) -> None:
        with respx.mock:
            respx.get(PAGE_URL).mock(
                return_value=httpx.Response(
                    200, content=b"\x89PNG\r\n", headers={"content-type": "image/png"}
                )
            )
            async with httpx.AsyncClient() as client:
                stream = await Fetcher(client).open(TARGET)
                chunks = [chunk async for chunk in stream.chunks]
                await stream.close()
                await stream.close()
        assert b"".join(chunks) == b"\x89PNG\r\n"
        assert stream.media_type == "image/png"
