from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable


def media_type(content_type: str) -> str:
    """``'text/html; charset=utf-8'`` → ``'text/html'``."""
    return content_type.split(";", 1)[0].strip().lower()


@dataclass(frozen=True)
class UpstreamResponse:
    """A fully read upstream response. The body is already decompressed."""

    url: str
    status_code: int
    headers: list[tuple[str, str]]  # content-encoding already removed
    content_type: str
    body: bytes = b""

    @property
    def media_type(self) -> str:
        return media_type(self.content_type)

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400


@dataclass
class UpstreamStream:
    """An upstream response whose body has not been read yet.

    Iterating ``chunks`` yields decompressed bytes. ``aclose`` must be awaited
    exactly once whether or not the body was consumed.
    """

    url: str
    status_code: int
    headers: list[tuple[str, str]]
    content_type: str
    chunks: AsyncIterator[bytes]
    aclose: Callable[[], Awaitable[None]]
    _closed: bool = field(default=False, repr=False)

    @property
    def media_type(self) -> str:
        return media_type(self.content_type)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self.aclose()

    async def read(self) -> UpstreamResponse:
        """Buffer the remaining body and close the stream."""
        try:
            body = b"".join([chunk async for chunk in self.chunks])
        finally:
            with anyio.CancelScope(shield=True):
                await self.close()
        return UpstreamResponse(
            url=self.url,
            status_code=self.status_code,
            headers=self.headers,
            content_type=self.content_type,
            body=body,
        )
