"""Upstream HTTP fetcher.

All outbound requests go through a single Fetcher instance holding the shared
httpx.AsyncClient. The lifespan owns the client lifecycle.

Redirects are intercepted, never followed: a 3xx response is handed back to
the client with its ``Location`` rewritten into the proxy's path space, so
the browser keeps navigating through the proxy.
"""

from __future__ import annotations

import re
import socket
import ssl
from typing import TYPE_CHECKING
from urllib.parse import urljoin

import anyio
import httpx
import structlog

from routethru.codec import proxy_path, resolve_reference
from routethru.config import FetcherSettings
from routethru.errors import DecodeError, ErrorCode, FetchError
from routethru.models.upstream import UpstreamStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator, Mapping

    from routethru.codec import TargetReference
    from routethru.models.upstream import UpstreamResponse

log = structlog.get_logger()

# Headers describing the encoded body; meaningless once httpx has decoded it
_ENCODING_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})

_DNS_FAILURE = re.compile(
    r"name or service not known|nodename nor servname|getaddrinfo failed"
    r"|temporary failure in name resolution|no address associated with hostname",
    re.IGNORECASE,
)


def build_http_client(settings: FetcherSettings | None = None) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    settings = settings or FetcherSettings()
    transport = httpx.AsyncHTTPTransport(
        verify=settings.verify_tls,
        retries=settings.max_retries,
        limits=httpx.Limits(
            max_connections=settings.max_connections,
            max_keepalive_connections=settings.max_keepalive_connections,
        ),
    )
    return httpx.AsyncClient(
        transport=transport,
        follow_redirects=False,
        timeout=httpx.Timeout(
            settings.timeout_seconds,
            connect=settings.connect_timeout_seconds,
        ),
    )


def build_upstream_headers(
    inbound: Mapping[str, str] | None,
    settings: FetcherSettings,
) -> dict[str, str]:
    """Pick the request headers that are safe to forward upstream.

    ``Host``, cookies and credentials are never forwarded. ``Accept-Encoding``
    is left to httpx so every encoding it advertises can also be decoded.
    """
    lowered = {key.lower(): value for key, value in (inbound or {}).items()}
    return {
        "User-Agent": lowered.get("user-agent") or settings.default_user_agent,
        "Accept-Language": lowered.get("accept-language") or settings.default_accept_language,
        "Accept": lowered.get("accept") or "*/*",
    }


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_error(exc: httpx.HTTPError, target: TargetReference) -> FetchError:
    """Map an httpx failure onto the proxy's fetch error taxonomy."""
    host = target.host
    chain = list(_cause_chain(exc))
    detail = str(exc) or type(exc).__name__

    if isinstance(exc, httpx.TimeoutException):
        return FetchError(ErrorCode.TIMEOUT, f"Timed out waiting for upstream host {host}", host)
    if any(isinstance(e, socket.gaierror) for e in chain) or _DNS_FAILURE.search(detail):
        return FetchError(
            ErrorCode.HOST_UNREACHABLE, f"Upstream host {host} could not be resolved", host
        )
    if any(isinstance(e, ssl.SSLError) for e in chain) or "CERTIFICATE_VERIFY_FAILED" in detail:
        return FetchError(ErrorCode.TLS_ERROR, f"TLS handshake with {host} failed: {detail}", host)
    if any(isinstance(e, ConnectionRefusedError) for e in chain) or "refused" in detail.lower():
        return FetchError(
            ErrorCode.CONNECTION_REFUSED, f"Upstream host {host} refused the connection", host
        )
    if isinstance(exc, httpx.ConnectError):
        return FetchError(
            ErrorCode.HOST_UNREACHABLE, f"Upstream host {host} is unreachable: {detail}", host
        )
    return FetchError(ErrorCode.UPSTREAM_ERROR, f"Error talking to {host}: {detail}", host)


async def read_body(
    stream: UpstreamStream, target: TargetReference, timeout: float | None
) -> UpstreamResponse:
    """Buffer *stream*, failing with ``TIMEOUT`` if the whole body takes longer than *timeout*."""
    try:
        with anyio.fail_after(timeout):
            return await stream.read()
    except TimeoutError as exc:
        log.warning("fetch_body_timed_out", url=target.url, timeout_seconds=timeout)
        raise FetchError(
            ErrorCode.TIMEOUT,
            f"Timed out reading the response body from upstream host {target.host}",
            target.host,
        ) from exc


def _response_headers(response: httpx.Response, target: TargetReference) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    for name, value in response.headers.multi_items():
        if name in _ENCODING_HEADERS:
            continue
        if name == "location" and response.is_redirect:
            resolved = resolve_reference(value, target.url)
            if resolved is not None:
                value = proxy_path(resolved)
            else:
                value = urljoin(target.url, value)
        headers.append((name, value))
    return headers


class Fetcher:
    """Fetches targets over the shared client with redirect interception."""

    def __init__(self, client: httpx.AsyncClient, settings: FetcherSettings | None = None) -> None:
        self._client = client
        self._settings = settings or FetcherSettings()

    async def open(
        self,
        target: TargetReference,
        inbound_headers: Mapping[str, str] | None = None,
    ) -> UpstreamStream:
        """Send the request and return once the upstream headers have arrived."""
        try:
            request = self._client.build_request(
                "GET",
                target.url,
                headers=build_upstream_headers(inbound_headers, self._settings),
            )
            response = await self._client.send(request, stream=True)
        except (httpx.InvalidURL, UnicodeError) as exc:
            # Hosts urlsplit accepts but httpx or the IDNA codec reject
            log.warning("fetch_rejected_url", url=target.url, error=str(exc))
            raise DecodeError(
                ErrorCode.DECODE_MALFORMED, f"Malformed target URL {target.url!r}: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            error = classify_error(exc, target)
            log.warning("fetch_failed", url=target.url, code=error.code, error=str(exc))
            raise error from exc

        log.info(
            "fetch_headers_received",
            url=target.url,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            content_encoding=response.headers.get("content-encoding", ""),
        )
        return UpstreamStream(
            url=target.url,
            status_code=response.status_code,
            headers=_response_headers(response, target),
            content_type=response.headers.get("content-type", ""),
            chunks=self._iter_body(response, target),
            aclose=response.aclose,
        )

    async def fetch(
        self,
        target: TargetReference,
        inbound_headers: Mapping[str, str] | None = None,
    ) -> UpstreamResponse:
        """Fetch *target* and buffer the decompressed body."""
        stream = await self.open(target, inbound_headers)
        upstream = await read_body(stream, target, self._settings.timeout_seconds)
        log.info(
            "fetch_complete",
            url=target.url,
            status_code=upstream.status_code,
            content_length=len(upstream.body),
        )
        return upstream

    async def _iter_body(
        self, response: httpx.Response, target: TargetReference
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            error = classify_error(exc, target)
            log.warning("fetch_body_failed", url=target.url, code=error.code, error=str(exc))
            raise error from exc
