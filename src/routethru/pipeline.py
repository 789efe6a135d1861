"""Read-through proxy pipeline.

Receives a decoded target, orchestrates cache lookup / upstream fetch /
rewrite / cache store, and returns a starlette response.
No routing here; routes.py handles the HTTP wiring.

Content that gets rewritten is buffered in full before rewriting, since a
pattern can straddle chunk boundaries. Everything else is streamed to the
client as it arrives, teed into the disk tier when cacheable.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

import anyio
import structlog
from starlette.responses import Response, StreamingResponse

from routethru.errors import DecodeError, ErrorCode
from routethru.fetcher import read_body
from routethru.rewriter import filter_response_headers

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from structlog.typing import FilteringBoundLogger

    from routethru.cache import CacheService, DiskCacheWriter
    from routethru.codec import TargetReference
    from routethru.models.cache import CacheEntry
    from routethru.models.upstream import UpstreamStream
    from routethru.protocols import FetcherProtocol
    from routethru.rewriter import ContentRewriter


class CacheStatus(StrEnum):
    HIT_MEMORY = "HIT-MEMORY"
    HIT_DISK = "HIT-DISK"
    MISS = "MISS"


def _apply_headers(
    response: Response,
    headers: list[tuple[str, str]],
    cache_status: CacheStatus,
) -> Response:
    for name, value in headers:
        if name.lower() == "content-type":
            continue
        response.headers.append(name, value)
    response.headers["x-cache"] = cache_status
    return response


def _content_type_header(content_type: str) -> dict[str, str]:
    return {"content-type": content_type} if content_type else {}


class ProxyPipeline:
    """CacheLookup → (miss) Fetching → Rewrite → CacheStore → response."""

    def __init__(
        self,
        fetcher: FetcherProtocol,
        rewriter: ContentRewriter,
        cache: CacheService,
        *,
        strip_security_headers: bool = True,
        read_timeout: float | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._rewriter = rewriter
        self._cache = cache
        self._strip_security_headers = strip_security_headers
        self._read_timeout = read_timeout

    async def handle(
        self,
        target: TargetReference,
        inbound_headers: Mapping[str, str] | None = None,
    ) -> Response:
        log = structlog.get_logger().bind(url=target.url)

        if not target.is_fetchable:
            raise DecodeError(
                ErrorCode.DECODE_MALFORMED,
                f"Unsupported scheme {target.scheme!r} in target URL {target.url!r}",
            )

        entry = await self._cache.lookup(target.url)
        if entry is not None:
            log.info("cache_hit", tier=entry.tier)
            return self._cached_response(entry)

        log.info("cache_miss_fetching")
        stream = await self._fetcher.open(target, inbound_headers)
        headers = filter_response_headers(
            stream.headers, target, strip_security=self._strip_security_headers
        )
        cacheable = self._cache.is_cacheable(stream.status_code)

        # Only cacheable, non-rewritable bodies stream
        if not cacheable or self._rewriter.is_rewritable(stream.content_type):
            return await self._buffered_response(stream, target, headers, cacheable, log)

        writer = self._cache.open_writer(target.url, stream.content_type)
        log.info(
            "relay_started",
            status_code=stream.status_code,
            content_type=stream.content_type,
            caching=writer is not None,
        )
        response = StreamingResponse(
            self._relay(stream, writer, log),
            status_code=stream.status_code,
            headers=_content_type_header(stream.content_type),
        )
        return _apply_headers(response, headers, CacheStatus.MISS)

    def _cached_response(self, entry: CacheEntry) -> Response:
        status = CacheStatus.HIT_MEMORY if entry.tier == "memory" else CacheStatus.HIT_DISK
        response = Response(
            content=entry.payload,
            status_code=200,
            headers=_content_type_header(entry.content_type),
        )
        return _apply_headers(response, [], status)

    async def _buffered_response(
        self,
        stream: UpstreamStream,
        target: TargetReference,
        headers: list[tuple[str, str]],
        cacheable: bool,
        log: FilteringBoundLogger,
    ) -> Response:
        upstream = await read_body(stream, target, self._read_timeout)
        document = self._rewriter.rewrite(upstream.body, upstream.content_type, target)
        log.info(
            "fetch_complete",
            status_code=upstream.status_code,
            content_length=len(document.body),
            rewritten=document.rewritten,
        )

        # Store failures are logged inside the tiers and never fail the request
        if cacheable:
            await self._cache.store(target.url, document.body, document.content_type)

        response = Response(
            content=document.body,
            status_code=upstream.status_code,
            headers=_content_type_header(document.content_type),
        )
        return _apply_headers(response, headers, CacheStatus.MISS)

    async def _relay(
        self,
        stream: UpstreamStream,
        writer: DiskCacheWriter | None,
        log: FilteringBoundLogger,
    ) -> AsyncIterator[bytes]:
        """Yield upstream chunks to the client, teeing them into the disk tier.

        A client disconnect cancels this generator; the partial cache file is
        then discarded and the upstream response closed.
        """
        completed = False
        try:
            async for chunk in stream.chunks:
                if writer is not None:
                    await writer.write(chunk)
                yield chunk
            completed = True
            if writer is not None:
                await writer.commit()
            log.info("relay_complete")
        finally:
            if not completed:
                log.info("relay_aborted")
                if writer is not None:
                    writer.abort()
            with anyio.CancelScope(shield=True):
                await stream.close()
